"""
In-memory document store.

This module provides a dict-backed DocumentStore for:
- Unit and integration tests
- Local development without a database

Invariants:
    - All data is lost on process exit
    - Positions are a process-wide insertion sequence, so ordering and
      cursors behave like the SQLite backend
    - Returned documents are copies; mutating them never touches storage
    - Writes inside transaction() are journaled and undone if the
      outermost block raises

How to change safely:
    - Keep behavior identical to SqliteDocumentStore; tests run both
    - Search ranking may differ from FTS5, result membership must not
"""

from __future__ import annotations

import copy
import itertools
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from ..schema.registry import SchemaRegistry
from .base import (
    Document,
    DocumentNotFoundError,
    Query,
    QuerySpec,
    StoreConnectionError,
    StoreError,
    TransactionLock,
    UnknownIndexError,
    strip_none,
)
from .expr import evaluate, same_value

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+", re.UNICODE)

# (table, position, document)
_Entry = Tuple[str, int, Document]


def tokenize(text: str) -> List[str]:
    return _TOKEN.findall(text.lower())


def search_rank(text: Any, query: str) -> int:
    """Number of query terms found in text; the last term matches as a prefix."""
    if not isinstance(text, str):
        return 0
    words = tokenize(text)
    terms = tokenize(query)
    hits = 0
    for i, term in enumerate(terms):
        if i == len(terms) - 1:
            if any(w.startswith(term) for w in words):
                hits += 1
        elif term in words:
            hits += 1
    return hits


class InMemoryQuery(Query):
    def __init__(self, spec: QuerySpec, store: InMemoryDocumentStore) -> None:
        super().__init__(spec)
        self._store = store

    async def _fetch(
        self,
        after: Optional[int],
        limit: Optional[int],
    ) -> List[Tuple[int, Document]]:
        spec = self._spec
        rows = [
            (seq, doc)
            for seq, doc in self._store._rows(spec.table.name)
            if self._matches(doc)
        ]

        if spec.search is not None:
            search_def = spec.table.get_search_index(spec.search[0])
            if search_def is None:
                raise UnknownIndexError(f"Table '{spec.table.name}' has no search index '{spec.search[0]}'")
            ranked = []
            for seq, doc in rows:
                rank = search_rank(doc.get(search_def.field), spec.search[1])
                if rank:
                    ranked.append((rank, seq, doc))
            ranked.sort(key=lambda r: (-r[0], -r[1]))
            rows = [(pos, doc) for pos, (_, _, doc) in enumerate(ranked)]
            if after is not None:
                rows = [r for r in rows if r[0] > after]
        else:
            if spec.descending:
                rows.reverse()
            if after is not None:
                rows = [r for r in rows if (r[0] < after if spec.descending else r[0] > after)]

        if limit is not None:
            rows = rows[:limit]
        return [(pos, copy.deepcopy(doc)) for pos, doc in rows]

    def _matches(self, doc: Document) -> bool:
        spec = self._spec
        if spec.index is not None:
            for key, value in spec.index[1].items():
                if not same_value(doc.get(key), value):
                    return False
        return all(bool(evaluate(expr, doc)) for expr in spec.filters)


class InMemoryDocumentStore:
    """Dict-backed implementation of DocumentStore.

    Attributes:
        registry: Table definitions used to resolve index names

    Thread safety:
        Single event loop only. transaction() serializes operations
        across coroutines and rolls back on error.

    Example:
        >>> store = InMemoryDocumentStore(registry)
        >>> await store.connect()
        >>> doc_id = await store.insert("blog", {"title": "Hello"})
        >>> (await store.get(doc_id))["title"]
        'Hello'
    """

    def __init__(self, registry: SchemaRegistry, clock=None) -> None:
        self.registry = registry
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._docs: Dict[str, _Entry] = {}
        self._seq = itertools.count(1)
        self._connected = False
        self._lock = TransactionLock()
        self._journal: Optional[List[Tuple[str, Optional[_Entry]]]] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._docs.clear()
        logger.debug("InMemoryDocumentStore closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock.hold() as outermost:
            if not outermost:
                yield
                return
            self._journal = []
            try:
                yield
            except BaseException:
                self._rollback()
                raise
            finally:
                self._journal = None

    def _remember(self, doc_id: str) -> None:
        if self._journal is not None and self._lock.held_here():
            entry = self._docs.get(doc_id)
            self._journal.append((doc_id, copy.deepcopy(entry)))

    def _rollback(self) -> None:
        for doc_id, entry in reversed(self._journal or []):
            if entry is None:
                self._docs.pop(doc_id, None)
            else:
                self._docs[doc_id] = entry
        logger.debug("Rolled back transaction", extra={"writes": len(self._journal or [])})

    def _check(self) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected")

    def _rows(self, table: str) -> List[Tuple[int, Document]]:
        rows = [(seq, doc) for name, seq, doc in self._docs.values() if name == table]
        rows.sort(key=lambda r: r[0])
        return rows

    async def get(self, doc_id: str, table: Optional[str] = None) -> Optional[Document]:
        self._check()
        entry = self._docs.get(doc_id)
        if entry is None or (table is not None and entry[0] != table):
            return None
        return copy.deepcopy(entry[2])

    async def insert(self, table: str, data: Mapping[str, Any]) -> str:
        self._check()
        if table not in self.registry:
            raise StoreError(f"Unknown table '{table}'")
        doc_id = uuid.uuid4().hex
        doc = strip_none(copy.deepcopy(dict(data)))
        doc["_id"] = doc_id
        doc["_creation_time"] = self._clock()
        self._remember(doc_id)
        self._docs[doc_id] = (table, next(self._seq), doc)
        logger.debug("Inserted document", extra={"table": table, "doc_id": doc_id})
        return doc_id

    async def patch(self, doc_id: str, partial: Mapping[str, Any]) -> None:
        self._check()
        entry = self._docs.get(doc_id)
        if entry is None:
            raise DocumentNotFoundError(f"Document not found: {doc_id}")
        self._remember(doc_id)
        doc = entry[2]
        for key, value in partial.items():
            if key in ("_id", "_creation_time"):
                continue
            if value is None:
                doc.pop(key, None)
            else:
                doc[key] = copy.deepcopy(value)

    async def delete(self, doc_id: str) -> None:
        self._check()
        self._remember(doc_id)
        if self._docs.pop(doc_id, None) is None:
            raise DocumentNotFoundError(f"Document not found: {doc_id}")

    def query(self, table: str) -> InMemoryQuery:
        self._check()
        table_def = self.registry.get(table)
        if table_def is None:
            raise StoreError(f"Unknown table '{table}'")
        return InMemoryQuery(QuerySpec(table=table_def), self)

    def count(self, table: str) -> int:
        """Number of documents in a table (test helper)."""
        return sum(1 for name, _, _ in self._docs.values() if name == table)
