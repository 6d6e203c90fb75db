"""
Schema Registry for lazycrud.

The SchemaRegistry holds every TableDef an engine serves. It is the
startup-time check that each table is handed to the factory it was
declared for: crud() only accepts owned tables, org_crud() only org
tables, and so on.

Invariants:
    - Registry is mutable during setup, frozen before serving
    - Table names are unique
    - require() fails with SchemaKindError, never at call time
    - Fingerprint changes when any table definition changes

How to change safely:
    - Register all tables before calling freeze()
    - Stores read index definitions from the registry; keep names stable

Example:
    >>> registry = SchemaRegistry()
    >>> register_system_tables(registry)
    >>> registry.register(Blog)
    >>> registry.require("blog", TableKind.OWNED)
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterator, List, Optional

from ..errors import ConfigError, SchemaKindError
from .types import TableDef, TableKind

logger = logging.getLogger(__name__)


class RegistryFrozenError(ConfigError):
    """Raised when attempting to modify a frozen registry."""

    pass


class DuplicateRegistrationError(ConfigError):
    """Raised when attempting to register a table name twice."""

    pass


class UnknownTableError(ConfigError):
    """Raised when a table is used without being registered."""

    pass


class SchemaRegistry:
    """Central registry for table definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        self._tables: Dict[str, TableDef] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, table: TableDef) -> TableDef:
        """Register a table definition.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register table '{table.name}': registry is frozen"
                )
            if table.name in self._tables:
                raise DuplicateRegistrationError(f"Table '{table.name}' already registered")
            self._tables[table.name] = table
            logger.debug(f"Registered table: {table.name} (kind={table.kind.value})")
        return table

    def get(self, name: str) -> Optional[TableDef]:
        return self._tables.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tables

    def tables(self) -> Iterator[TableDef]:
        """Iterate over all registered tables."""
        yield from self._tables.values()

    def require(self, name: str, kind: Optional[TableKind] = None) -> TableDef:
        """Look up a table, checking the factory kind it was declared for.

        Raises:
            UnknownTableError: If the table is not registered
            SchemaKindError: If the table was declared for another factory
        """
        table = self._tables.get(name)
        if table is None:
            raise UnknownTableError(f"Table '{name}' is not registered")
        if kind is not None and table.kind != kind:
            raise SchemaKindError(name, expected=kind.value, actual=table.kind.value)
        return table

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Schema registry frozen with {len(self._tables)} tables, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def to_dict(self) -> dict:
        return {"tables": [self._tables[name].to_dict() for name in sorted(self._tables)]}

    def validate_all(self) -> List[str]:
        """Check cross-table references.

        Returns:
            List of problems (empty if valid)
        """
        errors = []
        for table in self._tables.values():
            if table.kind == TableKind.CHILD and table.parent not in self._tables:
                errors.append(f"Child table '{table.name}' references unknown parent '{table.parent}'")
            for f in table.fields:
                if f.ref_table and f.ref_table not in self._tables:
                    errors.append(
                        f"Field '{f.name}' in table '{table.name}' "
                        f"references unknown table '{f.ref_table}'"
                    )
        return errors
