"""
Unit tests for engine settings and logging setup.
"""

import logging

import json_log_formatter
import pytest

from lazycrud.config import AclFrom, Cascade, Settings, setup_logging


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        """Defaults are valid."""
        settings = Settings()
        settings.check()
        assert settings.bulk_max == 100
        assert settings.api_prefix == "/api"
        assert settings.cache_ttl_ms == 7 * 24 * 60 * 60 * 1000

    def test_environment_prefix(self, monkeypatch):
        """LAZYCRUD_* variables override defaults."""
        monkeypatch.setenv("LAZYCRUD_BULK_MAX", "5")
        monkeypatch.setenv("LAZYCRUD_STRICT_FILTER", "true")
        settings = Settings()
        assert settings.bulk_max == 5
        assert settings.strict_filter is True

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"bulk_max": 0}, "bulk_max"),
            ({"max_editors": 0}, "max_editors"),
            ({"large_filter_threshold": 0}, "large_filter_threshold"),
            ({"cache_ttl_ms": -1}, "TTLs"),
            ({"log_format": "xml"}, "log_format"),
            ({"api_prefix": "api"}, "api_prefix"),
        ],
    )
    def test_check_rejects(self, overrides, message):
        """check() rejects nonsensical values."""
        with pytest.raises(ValueError, match=message):
            Settings(**overrides).check()


class TestTableOptions:
    """Tests for the per-table option dataclasses."""

    def test_frozen(self):
        """Options are immutable."""
        cascade = Cascade("message", "chat_id")
        with pytest.raises(AttributeError):
            cascade.table = "other"
        assert AclFrom("project", "project_id").field == "project_id"


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        """json installs the JSON formatter."""
        setup_logging(Settings(log_format="json", log_level="debug"))
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_text_format(self):
        """text installs a plain formatter and quiets access logs."""
        setup_logging(Settings())
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("uvicorn.access").level == logging.WARNING
