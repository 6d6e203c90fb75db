"""
Core type definitions for the lazycrud schema system.

This module defines the declarative building blocks every generated
operation set is derived from:
- FieldDef: A single field of a table
- IndexDef / SearchIndexDef: Named equality and full-text indexes
- TableDef: A table plus the factory kind it was declared for

Table constructors (owned_table, org_table, child_table, cache_table,
base_table) add the system fields and indexes the matching factory
relies on, so a table declared with owned_table() always carries
user_id/updated_at/deleted_at and a by_user index.

Invariants:
    - A TableDef's kind decides which factory may consume it
    - System fields are stamped by the engine, never accepted from callers
    - Index and field names are unique within a table
    - enum_values are append-only

How to change safely:
    - Add new FieldKinds at the end and teach validate_value about them
    - New system fields must be added to every constructor of that kind
    - Never rename an index; stores and factories address them by name

Example:
    >>> from lazycrud.schema.types import owned_table, field
    >>> Blog = owned_table(
    ...     "blog",
    ...     fields=(
    ...         field("title", "str", required=True),
    ...         field("content", "str"),
    ...         field("cover", "file"),
    ...     ),
    ...     search="content",
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable


class FieldKind(Enum):
    """Supported field types in the schema."""

    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # Unix milliseconds
    JSON = "json"
    ENUM = "enum"
    REFERENCE = "ref"  # Document id in ref_table
    LIST_STRING = "list_str"
    LIST_REF = "list_ref"
    FILE = "file"  # Storage id of one attachment
    FILES = "files"  # Storage ids of several attachments

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


class TableKind(Enum):
    """Which factory a table was declared for."""

    OWNED = "owned"
    ORG = "org"
    CHILD = "child"
    CACHE = "cache"
    BASE = "base"


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field within a table.

    Attributes:
        name: Field name as stored in documents
        kind: The data type of the field
        required: Whether the field must be present on create
        default: Value applied on create when the field is absent
        enum_values: Valid values if kind is ENUM
        ref_table: Target table if kind is REFERENCE or LIST_REF
        max_length: Upper bound for string length
        system: Stamped by the engine; callers may filter on it but not write it
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: tuple[str, ...] | None = None
    ref_table: str | None = None
    max_length: int | None = None
    system: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.name.startswith("_"):
            raise ValueError(f"Field name '{self.name}' is reserved")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")

    @property
    def is_file(self) -> bool:
        return self.kind in (FieldKind.FILE, FieldKind.FILES)

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        validators = {
            FieldKind.STRING: lambda v: isinstance(v, str),
            FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
            FieldKind.FLOAT: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
            FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
            FieldKind.TIMESTAMP: lambda v: isinstance(v, int)
            and not isinstance(v, bool)
            and v >= 0,
            FieldKind.JSON: lambda _: True,
            FieldKind.REFERENCE: lambda v: isinstance(v, str) and bool(v),
            FieldKind.FILE: lambda v: isinstance(v, str) and bool(v),
            FieldKind.LIST_STRING: lambda v: isinstance(v, list)
            and all(isinstance(i, str) for i in v),
            FieldKind.LIST_REF: lambda v: isinstance(v, list)
            and all(isinstance(i, str) and i for i in v),
            FieldKind.FILES: lambda v: isinstance(v, list)
            and all(isinstance(i, str) and i for i in v),
        }

        if self.kind == FieldKind.ENUM:
            if not isinstance(value, str):
                return False, f"Field '{self.name}' must be a string, got {type(value).__name__}"
            if value not in (self.enum_values or ()):
                return (
                    False,
                    f"Field '{self.name}' must be one of {self.enum_values}, got '{value}'",
                )
            return True, None

        validator = validators.get(self.kind)
        if validator and not validator(value):
            return False, f"Field '{self.name}' has invalid type for kind {self.kind.value}"

        if self.max_length is not None and isinstance(value, str) and len(value) > self.max_length:
            return False, f"Field '{self.name}' exceeds {self.max_length} characters"

        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.required:
            result["required"] = True
        if self.default is not None:
            result["default"] = self.default
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.ref_table:
            result["ref_table"] = self.ref_table
        if self.max_length is not None:
            result["max_length"] = self.max_length
        if self.system:
            result["system"] = True
        return result


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    default: Any = None,
    enum_values: tuple[str, ...] | None = None,
    ref_table: str | None = None,
    max_length: int | None = None,
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Example:
        >>> title = field("title", "str", required=True)
        >>> status = field("status", "enum", enum_values=("draft", "published"))
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        default=default,
        enum_values=enum_values,
        ref_table=ref_table,
        max_length=max_length,
        description=description,
    )


def _system(name: str, kind: FieldKind, ref_table: str | None = None) -> FieldDef:
    return FieldDef(name=name, kind=kind, ref_table=ref_table, system=True)


@dataclass(frozen=True)
class IndexDef:
    """Equality index over one or more fields, matched by prefix."""

    name: str
    fields: tuple[str, ...]


@dataclass(frozen=True)
class SearchIndexDef:
    """Full-text index over a single string field."""

    name: str
    field: str


@dataclass(frozen=True)
class TableDef:
    """Definition of a table and the factory kind that owns it.

    Attributes:
        name: Table name
        kind: Factory kind (owned, org, child, cache, base)
        fields: All fields, user-declared and system
        indexes: Equality indexes
        search_indexes: Full-text indexes
        parent: Parent table (child tables only)
        foreign_key: Field holding the parent id (child tables only)
        cache_key: Field addressing cache entries (cache tables only)
    """

    name: str
    kind: TableKind
    fields: tuple[FieldDef, ...]
    indexes: tuple[IndexDef, ...] = ()
    search_indexes: tuple[SearchIndexDef, ...] = ()
    parent: str | None = None
    foreign_key: str | None = None
    cache_key: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Table name cannot be empty")
        names = [f.name for f in self.fields]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate fields in table '{self.name}': {sorted(duplicates)}")
        index_names = [i.name for i in self.indexes] + [s.name for s in self.search_indexes]
        if len(index_names) != len(set(index_names)):
            raise ValueError(f"Duplicate index names in table '{self.name}'")
        for index in self.indexes:
            for name in index.fields:
                if name not in names:
                    raise ValueError(
                        f"Index '{index.name}' on '{self.name}' references unknown field '{name}'"
                    )
        for search in self.search_indexes:
            if search.field not in names:
                raise ValueError(
                    f"Search index '{search.name}' on '{self.name}' "
                    f"references unknown field '{search.field}'"
                )

    def get_field(self, name: str) -> FieldDef | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_index(self, name: str) -> IndexDef | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def get_search_index(self, name: str) -> SearchIndexDef | None:
        for index in self.search_indexes:
            if index.name == name:
                return index
        return None

    @property
    def user_fields(self) -> tuple[FieldDef, ...]:
        return tuple(f for f in self.fields if not f.system)

    @property
    def file_fields(self) -> tuple[FieldDef, ...]:
        return tuple(f for f in self.fields if f.is_file)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "fields": [f.to_dict() for f in self.fields],
            "indexes": [{"name": i.name, "fields": list(i.fields)} for i in self.indexes],
        }
        if self.search_indexes:
            result["search_indexes"] = [
                {"name": s.name, "field": s.field} for s in self.search_indexes
            ]
        for key in ("parent", "foreign_key", "cache_key"):
            value = getattr(self, key)
            if value:
                result[key] = value
        return result


def _search_indexes(search: str | SearchIndexDef | bool | None) -> tuple[SearchIndexDef, ...]:
    if search is None or search is False:
        return ()
    if search is True:
        return (SearchIndexDef("search_field", "text"),)
    if isinstance(search, str):
        return (SearchIndexDef("search_field", search),)
    return (search,)


def _index(name: str, *fields: str) -> IndexDef:
    return IndexDef(name, tuple(fields))


def owned_table(
    name: str,
    fields: Iterable[FieldDef],
    indexes: Iterable[IndexDef] = (),
    search: str | SearchIndexDef | bool | None = None,
) -> TableDef:
    """Table of documents owned by a single user."""
    return TableDef(
        name=name,
        kind=TableKind.OWNED,
        fields=(
            *fields,
            _system("user_id", FieldKind.REFERENCE, "users"),
            _system("updated_at", FieldKind.TIMESTAMP),
            _system("deleted_at", FieldKind.TIMESTAMP),
        ),
        indexes=(_index("by_user", "user_id"), *indexes),
        search_indexes=_search_indexes(search),
    )


def org_table(
    name: str,
    fields: Iterable[FieldDef],
    indexes: Iterable[IndexDef] = (),
    search: str | SearchIndexDef | bool | None = None,
) -> TableDef:
    """Table of documents scoped to an organization, with an editors ACL."""
    return TableDef(
        name=name,
        kind=TableKind.ORG,
        fields=(
            *fields,
            _system("org_id", FieldKind.REFERENCE, "org"),
            _system("user_id", FieldKind.REFERENCE, "users"),
            _system("updated_at", FieldKind.TIMESTAMP),
            _system("deleted_at", FieldKind.TIMESTAMP),
            _system("editors", FieldKind.LIST_REF, "users"),
        ),
        indexes=(_index("by_org", "org_id"), _index("by_org_user", "org_id", "user_id"), *indexes),
        search_indexes=_search_indexes(search),
    )


def child_table(
    name: str,
    fields: Iterable[FieldDef],
    parent: str,
    foreign_key: str,
    index: str | None = None,
    indexes: Iterable[IndexDef] = (),
) -> TableDef:
    """Table whose rows belong to a row of the parent table.

    The foreign key must be declared among fields; authorization is
    always derived from the parent document.
    """
    fields = tuple(fields)
    if not any(f.name == foreign_key for f in fields):
        raise ValueError(f"Child table '{name}' must declare foreign key field '{foreign_key}'")
    return TableDef(
        name=name,
        kind=TableKind.CHILD,
        fields=(*fields, _system("updated_at", FieldKind.TIMESTAMP)),
        indexes=(_index(index or f"by_{parent}", foreign_key), *indexes),
        parent=parent,
        foreign_key=foreign_key,
    )


def cache_table(
    name: str,
    fields: Iterable[FieldDef],
    key: str,
    indexes: Iterable[IndexDef] = (),
) -> TableDef:
    """Key-addressed cache of externally fetched records."""
    fields = tuple(fields)
    if not any(f.name == key for f in fields):
        raise ValueError(f"Cache table '{name}' must declare key field '{key}'")
    return TableDef(
        name=name,
        kind=TableKind.CACHE,
        fields=(*fields, _system("updated_at", FieldKind.TIMESTAMP)),
        indexes=(_index(f"by_{key}", key), *indexes),
        cache_key=key,
    )


def base_table(
    name: str,
    fields: Iterable[FieldDef],
    indexes: Iterable[IndexDef] = (),
    search: str | SearchIndexDef | bool | None = None,
) -> TableDef:
    """Plain table with no factory semantics (system and lookup tables)."""
    return TableDef(
        name=name,
        kind=TableKind.BASE,
        fields=tuple(fields),
        indexes=tuple(indexes),
        search_indexes=_search_indexes(search),
    )
