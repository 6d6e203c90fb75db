"""
Unit tests for error types and client-side helpers.

Tests cover:
- Label splitting and the wire shape
- Validation error collapsing
- extract / code / message / detail helpers
- match_error dispatch
"""

from lazycrud.errors import (
    ERROR_MESSAGES,
    ConfigError,
    CrudError,
    ErrorCode,
    SchemaKindError,
    err,
    extract_error_data,
    get_error_code,
    get_error_detail,
    get_error_message,
    is_error_code,
    match_error,
    validation_error,
)


class TestErr:
    """Tests for err() and CrudError.to_dict."""

    def test_label_splits_on_first_colon(self):
        """'table:op' becomes table and op."""
        error = err(ErrorCode.NOT_FOUND, "blog:pub.read:extra")
        assert error.table == "blog"
        assert error.op == "pub.read:extra"
        assert error.debug == "blog:pub.read:extra"

    def test_label_without_colon(self):
        """A bare label is just the table."""
        error = err(ErrorCode.NOT_FOUND, "blog")
        assert error.table == "blog"
        assert error.op is None

    def test_wire_shape_omits_unset_keys(self):
        """Only set keys reach the wire."""
        assert err(ErrorCode.CONFLICT).to_dict() == {"code": "CONFLICT"}
        assert err(ErrorCode.RATE_LIMITED, "blog:create", retry_after=500).to_dict() == {
            "code": "RATE_LIMITED",
            "debug": "blog:create",
            "table": "blog",
            "op": "create",
            "retry_after": 500,
        }

    def test_str_falls_back_to_default_message(self):
        """str() of an error without a message is the default message."""
        assert str(err(ErrorCode.NOT_AUTHENTICATED)) == "Please log in"

    def test_every_code_has_a_message(self):
        """Each ErrorCode has a default message."""
        assert set(ERROR_MESSAGES) == set(ErrorCode)


class TestValidationError:
    """Tests for validation_error."""

    def test_first_message_per_field_wins(self):
        """Repeated fields keep their first message."""
        error = validation_error([("title", "required"), ("views", "bad"), ("title", "too long")])
        assert error.code == ErrorCode.VALIDATION_FAILED
        assert error.fields == ["title", "views"]
        assert error.field_errors == {"title": "required", "views": "bad"}
        assert error.message == "Invalid: title, views"

    def test_custom_code(self):
        """The code can be overridden (INVALID_WHERE)."""
        assert validation_error([("x", "y")], ErrorCode.INVALID_WHERE).code == ErrorCode.INVALID_WHERE


class TestClientHelpers:
    """Tests for the client-side helpers."""

    def test_extract_from_error_and_payloads(self):
        """Errors, wire envelopes and bare dicts all extract."""
        error = err(ErrorCode.FORBIDDEN, "wiki:update")
        assert extract_error_data(error)["code"] == "FORBIDDEN"
        assert extract_error_data({"error": {"code": "FORBIDDEN"}}) == {"code": "FORBIDDEN"}
        assert extract_error_data({"code": "FORBIDDEN"}) == {"code": "FORBIDDEN"}
        assert extract_error_data(ValueError("boom")) is None
        assert extract_error_data({"detail": "nope"}) is None

    def test_get_error_code(self):
        """Unknown codes are None."""
        assert get_error_code(err(ErrorCode.CONFLICT)) == ErrorCode.CONFLICT
        assert get_error_code({"code": "SOMETHING_ELSE"}) is None
        assert is_error_code({"code": "CONFLICT"}, ErrorCode.CONFLICT)

    def test_get_error_message_precedence(self):
        """Explicit message, then default, then str()."""
        assert get_error_message(CrudError(ErrorCode.NOT_FOUND, message="Gone")) == "Gone"
        assert get_error_message(err(ErrorCode.NOT_FOUND)) == "Not found"
        assert get_error_message(ValueError("boom")) == "boom"

    def test_get_error_detail(self):
        """Detail appends the table:op label."""
        assert get_error_detail(err(ErrorCode.NOT_FOUND, "blog:update")) == "Not found [blog:update]"
        assert get_error_detail(err(ErrorCode.NOT_FOUND, "blog")) == "Not found [blog]"
        assert get_error_detail(err(ErrorCode.NOT_FOUND)) == "Not found"

    def test_match_error(self):
        """Handlers dispatch on code with '_' as fallback."""
        handlers = {
            "CONFLICT": lambda data: "reload",
            "_": lambda data: "generic",
        }
        assert match_error(err(ErrorCode.CONFLICT), handlers) == "reload"
        assert match_error(err(ErrorCode.FORBIDDEN), handlers) == "generic"
        assert match_error(ValueError("boom"), handlers) == "generic"
        assert match_error(err(ErrorCode.FORBIDDEN), {"CONFLICT": lambda d: 1}) is None


class TestConfigErrors:
    """Tests for setup-time errors."""

    def test_schema_kind_error_is_config_error(self):
        """SchemaKindError names both kinds."""
        error = SchemaKindError("wiki", expected="owned", actual="org")
        assert isinstance(error, ConfigError)
        assert "org table" in str(error)
        assert "owned factory" in str(error)
