"""
Schema module for lazycrud.

This module provides the declarative table model:
- Field and table definitions (FieldDef, TableDef, table constructors)
- Payload validation with field-level errors
- The registry that binds tables to the factory kind they were declared for

Invariants:
    - Every table served by an engine is registered before setup completes
    - A table is consumed only by the factory matching its TableKind

How to change safely:
    - Add fields as optional; a new required field breaks existing creates
    - Never rename tables or indexes in place
"""

from .registry import (
    DuplicateRegistrationError,
    RegistryFrozenError,
    SchemaRegistry,
    UnknownTableError,
)
from .system import SYSTEM_TABLES, register_system_tables
from .types import (
    FieldDef,
    FieldKind,
    IndexDef,
    SearchIndexDef,
    TableDef,
    TableKind,
    base_table,
    cache_table,
    child_table,
    field,
    org_table,
    owned_table,
)
from .validate import validate_or_raise, validate_payload

__all__ = [
    # Types
    "FieldDef",
    "FieldKind",
    "IndexDef",
    "SearchIndexDef",
    "TableDef",
    "TableKind",
    "field",
    "owned_table",
    "org_table",
    "child_table",
    "cache_table",
    "base_table",
    # Validation
    "validate_payload",
    "validate_or_raise",
    # Registry
    "SchemaRegistry",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
    "UnknownTableError",
    "SYSTEM_TABLES",
    "register_system_tables",
]
