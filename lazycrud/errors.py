"""
Error types for lazycrud.

Every failure a generated operation can report is a CrudError carrying a
stable ErrorCode. The code is what clients switch on; the message is
human-readable and may be localized or omitted.

Wire shape (CrudError.to_dict):
    {"code": ..., "message"?, "debug"?, "table"?, "op"?, "fields"?,
     "field_errors"?, "retry_after"?}

Invariants:
    - code is always present and never changes meaning
    - table/op come from a "table:op" label split on the first ':'
    - Configuration errors (SchemaKindError, ConfigError) are raised at
      setup time and never cross the wire

How to change safely:
    - Add new codes at the end of ErrorCode with a default message
    - Never rename an existing code; clients route on it
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional


class ErrorCode(str, Enum):
    """Stable error codes returned by generated operations."""

    ALREADY_ORG_MEMBER = "ALREADY_ORG_MEMBER"
    CANNOT_MODIFY_ADMIN = "CANNOT_MODIFY_ADMIN"
    CANNOT_MODIFY_OWNER = "CANNOT_MODIFY_OWNER"
    CONFLICT = "CONFLICT"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_ORG_ROLE = "INSUFFICIENT_ORG_ROLE"
    INVALID_FILE_TYPE = "INVALID_FILE_TYPE"
    INVALID_INVITE = "INVALID_INVITE"
    INVALID_WHERE = "INVALID_WHERE"
    INVITE_EXPIRED = "INVITE_EXPIRED"
    JOIN_REQUEST_EXISTS = "JOIN_REQUEST_EXISTS"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    MUST_TRANSFER_OWNERSHIP = "MUST_TRANSFER_OWNERSHIP"
    NO_FETCHER = "NO_FETCHER"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    NOT_ORG_MEMBER = "NOT_ORG_MEMBER"
    ORG_SLUG_TAKEN = "ORG_SLUG_TAKEN"
    RATE_LIMITED = "RATE_LIMITED"
    TARGET_MUST_BE_ADMIN = "TARGET_MUST_BE_ADMIN"
    UNAUTHORIZED = "UNAUTHORIZED"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"


ERROR_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.ALREADY_ORG_MEMBER: "Already a member of this organization",
    ErrorCode.CANNOT_MODIFY_ADMIN: "Admins cannot modify other admins",
    ErrorCode.CANNOT_MODIFY_OWNER: "Cannot modify the owner",
    ErrorCode.CONFLICT: "Conflict detected",
    ErrorCode.FILE_NOT_FOUND: "File not found",
    ErrorCode.FILE_TOO_LARGE: "File too large",
    ErrorCode.FORBIDDEN: "Forbidden",
    ErrorCode.INSUFFICIENT_ORG_ROLE: "Insufficient permissions",
    ErrorCode.INVALID_FILE_TYPE: "Invalid file type",
    ErrorCode.INVALID_INVITE: "Invalid invite",
    ErrorCode.INVALID_WHERE: "Invalid filters",
    ErrorCode.INVITE_EXPIRED: "Invite has expired",
    ErrorCode.JOIN_REQUEST_EXISTS: "Join request already exists",
    ErrorCode.LIMIT_EXCEEDED: "Limit exceeded",
    ErrorCode.MUST_TRANSFER_OWNERSHIP: "Must transfer ownership before leaving",
    ErrorCode.NO_FETCHER: "No fetcher configured",
    ErrorCode.NOT_AUTHENTICATED: "Please log in",
    ErrorCode.NOT_AUTHORIZED: "Not authorized",
    ErrorCode.NOT_FOUND: "Not found",
    ErrorCode.NOT_ORG_MEMBER: "Not a member of this organization",
    ErrorCode.ORG_SLUG_TAKEN: "Organization slug already taken",
    ErrorCode.RATE_LIMITED: "Too many requests",
    ErrorCode.TARGET_MUST_BE_ADMIN: "Can only transfer ownership to an admin",
    ErrorCode.UNAUTHORIZED: "Unauthorized",
    ErrorCode.USER_NOT_FOUND: "User not found",
    ErrorCode.VALIDATION_FAILED: "Validation failed",
}


class CrudError(Exception):
    """Typed failure of a generated operation.

    Raised when:
    - The caller is not authenticated or not authorized
    - A document is missing or belongs to someone else
    - Input fails schema or filter validation
    - A rate limit, bulk cap or editor cap is exceeded
    - An optimistic-concurrency check fails

    Attributes:
        code: Stable ErrorCode
        message: Human-readable message (may be None)
        debug: Free-form diagnostic label, usually "table:op"
        table: Table named by the failure
        op: Operation named by the failure
        fields: Field names that failed validation
        field_errors: First validation message per field
        retry_after: Milliseconds until a rate limit resets
    """

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        debug: Optional[str] = None,
        table: Optional[str] = None,
        op: Optional[str] = None,
        fields: Optional[List[str]] = None,
        field_errors: Optional[Dict[str, str]] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        self.code = ErrorCode(code)
        self.message = message
        self.debug = debug
        self.table = table
        self.op = op
        self.fields = fields
        self.field_errors = field_errors
        self.retry_after = retry_after
        super().__init__(message or ERROR_MESSAGES.get(self.code, self.code.value))

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation, omitting unset keys."""
        data: Dict[str, Any] = {"code": self.code.value}
        for key in ("message", "debug", "table", "op", "fields", "field_errors", "retry_after"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    def __repr__(self) -> str:
        return f"CrudError({self.code.value!r}, debug={self.debug!r})"


class ConfigError(Exception):
    """Invalid engine or table configuration detected at setup time."""

    pass


class SchemaKindError(ConfigError):
    """A table was handed to a factory built for a different table kind.

    Raised when:
    - crud() is given an org, child or cache table (and vice versa)
    - A child table is missing its parent or foreign key
    """

    def __init__(self, table: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Table '{table}' is registered as a {actual} table "
            f"but was passed to a {expected} factory"
        )
        self.table = table
        self.expected = expected
        self.actual = actual


def err(code: ErrorCode, label: Optional[str] = None, **kwargs: Any) -> CrudError:
    """Build a CrudError, splitting a "table:op" label.

    Example:
        >>> raise err(ErrorCode.NOT_FOUND, "blog:update")
    """
    if label is None:
        return CrudError(code, **kwargs)
    table, sep, op = label.partition(":")
    return CrudError(
        code,
        debug=label,
        table=table or None,
        op=op if sep else None,
        **kwargs,
    )


def validation_error(
    issues: List[tuple[str, str]],
    code: ErrorCode = ErrorCode.VALIDATION_FAILED,
) -> CrudError:
    """Collapse (field, message) issues into one error.

    Only the first message per field is kept.
    """
    field_errors: Dict[str, str] = {}
    for name, message in issues:
        field_errors.setdefault(name, message)
    fields = list(field_errors)
    message = f"Invalid: {', '.join(fields)}" if fields else ERROR_MESSAGES[code]
    return CrudError(code, message=message, fields=fields, field_errors=field_errors)


# =============================================================================
# Client-side helpers
# =============================================================================


def extract_error_data(error: Any) -> Optional[Dict[str, Any]]:
    """Return the wire dict for a CrudError or an already-decoded payload."""
    if isinstance(error, CrudError):
        return error.to_dict()
    if isinstance(error, Mapping):
        inner = error.get("error", error)
        if isinstance(inner, Mapping) and "code" in inner:
            return dict(inner)
    return None


def get_error_code(error: Any) -> Optional[ErrorCode]:
    data = extract_error_data(error)
    if data is None:
        return None
    try:
        return ErrorCode(data["code"])
    except ValueError:
        return None


def get_error_message(error: Any) -> str:
    """Explicit message, else the code's default, else str(error)."""
    data = extract_error_data(error)
    if data is not None:
        if data.get("message"):
            return data["message"]
        code = get_error_code(data)
        if code is not None:
            return ERROR_MESSAGES[code]
    return str(error) or "Unknown error"


def get_error_detail(error: Any) -> str:
    """Message with the table:op label appended when present."""
    data = extract_error_data(error) or {}
    base = get_error_message(error)
    if data.get("table") and data.get("op"):
        return f"{base} [{data['table']}:{data['op']}]"
    if data.get("table"):
        return f"{base} [{data['table']}]"
    return base


def is_error_code(error: Any, code: ErrorCode) -> bool:
    return get_error_code(error) == code


def match_error(error: Any, handlers: Mapping[str, Callable[[Dict[str, Any]], Any]]) -> Any:
    """Dispatch on the error code; "_" is the fallback handler.

    Returns None when neither the code nor a fallback is handled.
    """
    data = extract_error_data(error)
    if data is not None:
        handler = handlers.get(data["code"])
        if handler is not None:
            return handler(data)
    fallback = handlers.get("_")
    if fallback is not None:
        return fallback(data or {"message": str(error)})
    return None
