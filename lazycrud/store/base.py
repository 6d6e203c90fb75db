"""
Document store interface for lazycrud.

The engine never talks to a database directly; it consumes this
contract:
- get(id), insert(table, data) -> id, patch(id, partial), delete(id)
- query(table) returning a chainable Query with with_index, filter,
  with_search_index, order, and the terminal paginate, take, first,
  unique and collect
- transaction(), the atomic unit one generated operation runs in

Documents are plain dicts carrying the system keys "_id" and
"_creation_time" next to their fields.

Invariants:
    - Stored documents never contain None values; patching a key to
      None removes it
    - Query results are ordered by insertion (asc or desc), or by
      relevance for search queries
    - Cursors encode a position in that order; no server-side state
    - transaction() is reentrant within one asyncio task; only the
      outermost block commits, and an exception escaping it rolls back
      every write made inside

How to change safely:
    - Protocol changes require updating all implementations
    - Keep cursor encoding opaque to callers
    - Add tests to tests/unit/test_stores.py for both backends
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncContextManager,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from pydantic import BaseModel, Field

from ..schema.registry import SchemaRegistry
from ..schema.types import TableDef
from .expr import Expr

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


class StoreError(Exception):
    """Base exception for store operations."""

    pass


class StoreConnectionError(StoreError):
    """Store is not connected."""

    pass


class UnknownIndexError(StoreError):
    """Query named an index the table does not declare."""

    pass


class DocumentNotFoundError(StoreError):
    """patch() or delete() targeted a missing document."""

    pass


class MalformedCursorError(StoreError):
    """paginate() got a cursor it did not produce."""

    pass


class PaginationOpts(BaseModel):
    """Cursor pagination request."""

    num_items: int = Field(default=20, ge=1, le=1000, description="Page size")
    cursor: Optional[str] = Field(default=None, description="Opaque continue cursor")


@dataclass
class Page:
    """One page of query results."""

    page: List[Document]
    continue_cursor: str
    is_done: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "continue_cursor": self.continue_cursor,
            "is_done": self.is_done,
        }


@dataclass
class QuerySpec:
    """Everything a chained Query has accumulated."""

    table: TableDef
    index: Optional[Tuple[str, Dict[str, Any]]] = None
    filters: List[Expr] = field(default_factory=list)
    search: Optional[Tuple[str, str]] = None
    descending: bool = False


class TransactionLock:
    """asyncio lock that the owning task may re-enter."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None

    def held_here(self) -> bool:
        """True when the running task holds the lock."""
        task = asyncio.current_task()
        return task is not None and self._owner is task

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """Acquire the lock; yields True for the outermost holder."""
        if self.held_here():
            yield False
            return
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                yield True
            finally:
                self._owner = None


def strip_none(data: Mapping[str, Any]) -> Document:
    return {k: v for k, v in data.items() if v is not None}


class Query(ABC):
    """Chainable query over one table.

    Subclasses implement _fetch(); everything else is shared.
    """

    def __init__(self, spec: QuerySpec) -> None:
        self._spec = spec

    def with_index(self, name: str, eq: Optional[Mapping[str, Any]] = None) -> Query:
        """Restrict to documents whose index fields equal eq (prefix match).

        Raises:
            UnknownIndexError: If the table has no such index or eq names
                fields outside the index prefix
        """
        index = self._spec.table.get_index(name)
        if index is None:
            raise UnknownIndexError(f"Table '{self._spec.table.name}' has no index '{name}'")
        eq = dict(eq or {})
        prefix = index.fields[: len(eq)]
        if set(eq) != set(prefix):
            raise UnknownIndexError(
                f"Index '{name}' on '{self._spec.table.name}' is over {list(index.fields)}, "
                f"cannot match {sorted(eq)}"
            )
        if self._spec.search is not None:
            raise StoreError("with_index cannot be combined with with_search_index")
        self._spec.index = (name, eq)
        return self

    def with_search_index(self, name: str, text: str) -> Query:
        """Full-text search; results come back in relevance order."""
        if self._spec.table.get_search_index(name) is None:
            raise UnknownIndexError(
                f"Table '{self._spec.table.name}' has no search index '{name}'"
            )
        if self._spec.index is not None:
            raise StoreError("with_search_index cannot be combined with with_index")
        self._spec.search = (name, text)
        return self

    def filter(self, expr: Expr) -> Query:
        self._spec.filters.append(expr)
        return self

    def order(self, direction: str) -> Query:
        if direction not in ("asc", "desc"):
            raise ValueError(f"order must be 'asc' or 'desc', got {direction!r}")
        self._spec.descending = direction == "desc"
        return self

    @abstractmethod
    async def _fetch(
        self,
        after: Optional[int],
        limit: Optional[int],
    ) -> List[Tuple[int, Document]]:
        """Return (position, document) pairs in result order.

        Args:
            after: Only positions strictly past this one in result order
            limit: Maximum number of pairs
        """
        ...

    async def collect(self) -> List[Document]:
        return [doc for _, doc in await self._fetch(None, None)]

    async def take(self, n: int) -> List[Document]:
        if n <= 0:
            return []
        return [doc for _, doc in await self._fetch(None, n)]

    async def first(self) -> Optional[Document]:
        rows = await self._fetch(None, 1)
        return rows[0][1] if rows else None

    async def unique(self) -> Optional[Document]:
        """Single matching document or None.

        Raises:
            StoreError: If more than one document matches
        """
        rows = await self._fetch(None, 2)
        if len(rows) > 1:
            raise StoreError(
                f"unique() matched more than one document in '{self._spec.table.name}'"
            )
        return rows[0][1] if rows else None

    async def paginate(self, opts: PaginationOpts | Mapping[str, Any]) -> Page:
        if not isinstance(opts, PaginationOpts):
            opts = PaginationOpts.model_validate(dict(opts))
        after = _decode_cursor(opts.cursor)
        rows = await self._fetch(after, opts.num_items + 1)
        is_done = len(rows) <= opts.num_items
        rows = rows[: opts.num_items]
        if rows:
            cursor = str(rows[-1][0])
        else:
            cursor = opts.cursor or ""
        return Page(page=[doc for _, doc in rows], continue_cursor=cursor, is_done=is_done)


def _decode_cursor(cursor: Optional[str]) -> Optional[int]:
    if not cursor:
        return None
    try:
        return int(cursor)
    except ValueError:
        raise MalformedCursorError(f"Malformed cursor: {cursor!r}") from None


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Atomicity contract:
        - Everything executed inside one transaction() block is isolated
          from other transaction() blocks
        - Writes become durable when the outermost block exits normally;
          an exception escaping it undoes every write made inside
        - Writes made outside any transaction() block commit on their own

    Example:
        >>> store = InMemoryDocumentStore(registry)
        >>> await store.connect()
        >>> async with store.transaction():
        ...     doc_id = await store.insert("blog", {"title": "Hi"})
        ...     await store.patch(doc_id, {"title": "Hello"})
    """

    registry: SchemaRegistry

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        ...

    @abstractmethod
    async def get(self, doc_id: str, table: Optional[str] = None) -> Optional[Document]:
        """Fetch a document; None if missing or stored in another table."""
        ...

    @abstractmethod
    async def insert(self, table: str, data: Mapping[str, Any]) -> str:
        ...

    @abstractmethod
    async def patch(self, doc_id: str, partial: Mapping[str, Any]) -> None:
        """Merge partial into the document; None values remove keys.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        ...

    @abstractmethod
    async def delete(self, doc_id: str) -> None:
        """Remove a document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        ...

    @abstractmethod
    def query(self, table: str) -> Query:
        ...
