"""
Payload validation for lazycrud tables.

Invariants:
    - Validation errors are deterministic (fields checked in schema order)
    - Unknown fields suggest similar valid fields
    - System fields are never writable through a payload
    - A partial payload only validates the keys it carries; None clears
      a field and is rejected for required fields
"""

from __future__ import annotations

from difflib import get_close_matches
from typing import Any, Dict, List, Mapping, Tuple

from ..errors import validation_error
from .types import TableDef


def validate_payload(
    table: TableDef,
    payload: Mapping[str, Any],
    partial: bool = False,
) -> List[Tuple[str, str]]:
    """Validate payload against a table's user fields.

    Args:
        table: Table to validate against
        payload: Field values
        partial: Only validate present keys (update patches)

    Returns:
        List of (field_name, message); empty when valid
    """
    issues: List[Tuple[str, str]] = []
    writable = {f.name: f for f in table.user_fields}

    for name in payload:
        if name in writable:
            continue
        if table.get_field(name) is not None:
            issues.append((name, f"Field '{name}' is managed by the server"))
            continue
        suggestions = get_close_matches(name, list(writable), n=3)
        if suggestions:
            issues.append((name, f"Unknown field '{name}'. Did you mean: {suggestions}?"))
        else:
            issues.append((name, f"Unknown field '{name}'"))

    for field_def in table.user_fields:
        if partial and field_def.name not in payload:
            continue
        value = payload.get(field_def.name)
        if value is None and not partial:
            value = field_def.default
        ok, message = field_def.validate_value(value)
        if not ok and message:
            issues.append((field_def.name, message))

    return issues


def validate_or_raise(
    table: TableDef,
    payload: Mapping[str, Any],
    partial: bool = False,
) -> Dict[str, Any]:
    """Validate payload and return it with defaults applied.

    Raises:
        CrudError: VALIDATION_FAILED with fields and field_errors
    """
    issues = validate_payload(table, payload, partial=partial)
    if issues:
        raise validation_error(issues)
    data = dict(payload)
    if not partial:
        for field_def in table.user_fields:
            if data.get(field_def.name) is None and field_def.default is not None:
                data[field_def.name] = field_def.default
    return data
