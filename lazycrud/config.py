"""
Configuration for lazycrud.

Engine-wide settings load from environment variables (prefix
LAZYCRUD_) through pydantic-settings. Per-table options are small
frozen dataclasses passed to the factories.

Environment Variables:
    LAZYCRUD_STRICT_FILTER: Raise instead of warn on large in-memory filters
    LAZYCRUD_LARGE_FILTER_THRESHOLD: Docs filtered in memory before warning
    LAZYCRUD_BULK_MAX: Max items per bulk operation
    LAZYCRUD_MAX_EDITORS: Max entries in a document's editors list
    LAZYCRUD_SLOW_QUERY_THRESHOLD_MS: Default slow_query_warn threshold
    LAZYCRUD_LOG_LEVEL / LAZYCRUD_LOG_FORMAT: Logging (json or text)

Invariants:
    - Settings are immutable after the engine is set up
    - check() rejects nonsensical values before serving

How to change safely:
    - Add new settings with defaults preserving current behavior
    - Document every setting in the Field description
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings

DAY_MS = 24 * 60 * 60 * 1000
SEVEN_DAYS_MS = 7 * DAY_MS


class Settings(BaseSettings):
    """Engine configuration loaded from environment."""

    # Filtering
    strict_filter: bool = Field(
        default=False, description="Raise instead of warn when in-memory filtering is large"
    )
    large_filter_threshold: int = Field(
        default=1000, description="Docs filtered in memory before warning"
    )

    # Limits
    bulk_max: int = Field(default=100, description="Max items per bulk operation")
    max_editors: int = Field(default=100, description="Max editors per document")
    default_page_size: int = Field(default=20, description="Page size when none is given")

    # Middleware defaults
    slow_query_threshold_ms: int = Field(default=500, description="slow_query_warn threshold")

    # Lifetimes
    cache_ttl_ms: int = Field(default=SEVEN_DAYS_MS, description="Default cache entry TTL")
    invite_ttl_ms: int = Field(default=SEVEN_DAYS_MS, description="Org invite lifetime")

    # HTTP surface
    api_prefix: str = Field(default="/api", description="Prefix for operation routes")
    user_header: str = Field(default="x-user-id", description="Header carrying the caller id")

    # Observability
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="text", description="json or text")

    model_config = {"env_prefix": "LAZYCRUD_"}

    def check(self) -> None:
        """Validate configuration.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.large_filter_threshold < 1:
            raise ValueError("large_filter_threshold must be positive")
        if self.bulk_max < 1:
            raise ValueError("bulk_max must be positive")
        if self.max_editors < 1:
            raise ValueError("max_editors must be positive")
        if self.cache_ttl_ms < 0 or self.invite_ttl_ms < 0:
            raise ValueError("TTLs cannot be negative")
        if self.log_format not in ("json", "text"):
            raise ValueError(f"Invalid log_format: {self.log_format}")
        if not self.api_prefix.startswith("/"):
            raise ValueError("api_prefix must start with '/'")


def setup_logging(settings: Settings) -> None:
    """Configure root logging from settings."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        import json_log_formatter

        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@dataclass(frozen=True)
class RateLimit:
    """Sliding-window limit: at most max calls per window_ms."""

    max: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max < 1 or self.window_ms < 1:
            raise ValueError("RateLimit max and window_ms must be positive")


@dataclass(frozen=True)
class Cascade:
    """Child rows in table whose foreign_key points at the deleted parent."""

    table: str
    foreign_key: str


@dataclass(frozen=True)
class AclFrom:
    """Take the editors list from the parent document named by field."""

    table: str
    field: str

