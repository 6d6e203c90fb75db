"""
SQLite document store for lazycrud.

One SQLite file holds every table:
- documents: one row per document, fields stored as JSON
- documents_fts: FTS5 rows for every search index of every document
- Expression indexes over json_extract() for each declared IndexDef

Filters are compiled to SQL so index lookups, comparisons and cursor
positioning all run inside SQLite.

Invariants:
    - seq (INTEGER PRIMARY KEY AUTOINCREMENT) is the insertion position
      used for ordering and cursors
    - FTS rows are rewritten on every insert/patch and removed on delete
    - transaction() runs on one connection between BEGIN IMMEDIATE and COMMIT;
      an exception escaping it issues ROLLBACK. Writes outside a
      transaction commit on their own

How to change safely:
    - Schema migrations must be backward compatible (bump SCHEMA_VERSION)
    - Keep behavior identical to InMemoryDocumentStore; tests run both
    - Field names reach SQL as JSON paths and must stay identifiers

Table schema:
    documents:
        - seq INTEGER PRIMARY KEY AUTOINCREMENT
        - id TEXT UNIQUE (uuid4 hex)
        - table_name TEXT
        - creation_time INTEGER (Unix ms)
        - body_json TEXT

    documents_fts (fts5):
        - search_text
        - index_name UNINDEXED
        - doc_seq UNINDEXED
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, AsyncIterator, List, Mapping, Optional, Tuple

from ..schema.registry import SchemaRegistry
from ..schema.types import TableDef
from .base import (
    Document,
    DocumentNotFoundError,
    Query,
    QuerySpec,
    StoreConnectionError,
    StoreError,
    TransactionLock,
    strip_none,
)
from .expr import And, Compare, Expr, FieldRef, Literal, Or
from .memory import tokenize

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_SQL_OPS = {
    "eq": "IS",
    "neq": "IS NOT",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


def _json_path(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise StoreError(f"Field name not usable in SQL: {name!r}")
    return f"json_extract(body_json, '$.{name}')"


def _sql_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"))
    return value


def compile_expr(expr: Expr, params: List[Any]) -> str:
    """Compile a filter expression to a SQL boolean expression."""
    if isinstance(expr, FieldRef):
        return _json_path(expr.name)
    if isinstance(expr, Literal):
        params.append(_sql_value(expr.value))
        return "?"
    if isinstance(expr, Compare):
        left = compile_expr(expr.left, params)
        right = compile_expr(expr.right, params)
        return f"({left} {_SQL_OPS[expr.op]} {right})"
    if isinstance(expr, And):
        if not expr.items:
            return "1"
        return "(" + " AND ".join(compile_expr(i, params) for i in expr.items) + ")"
    if isinstance(expr, Or):
        if not expr.items:
            return "0"
        return "(" + " OR ".join(compile_expr(i, params) for i in expr.items) + ")"
    raise TypeError(f"Unsupported filter expression: {expr!r}")


def fts_query(text: str) -> Optional[str]:
    """Build an FTS5 MATCH string: any term, last term as prefix."""
    terms = [t.replace('"', "") for t in tokenize(text)]
    terms = [t for t in terms if t]
    if not terms:
        return None
    parts = [f'"{t}"' for t in terms[:-1]] + [f'"{terms[-1]}"*']
    return " OR ".join(parts)


class SqliteQuery(Query):
    def __init__(self, spec: QuerySpec, store: SqliteDocumentStore) -> None:
        super().__init__(spec)
        self._store = store

    def _where(self, params: List[Any]) -> str:
        spec = self._spec
        clauses = ["d.table_name = ?"]
        params.append(spec.table.name)
        if spec.index is not None:
            for key, value in spec.index[1].items():
                clauses.append(compile_expr(Compare("eq", FieldRef(key), Literal(value)), params))
        for expr in spec.filters:
            clauses.append(compile_expr(expr, params))
        return " AND ".join(clauses)

    async def _fetch(
        self,
        after: Optional[int],
        limit: Optional[int],
    ) -> List[Tuple[int, Document]]:
        spec = self._spec
        params: List[Any] = []

        if spec.search is not None:
            match = fts_query(spec.search[1])
            if match is None:
                return []
            params.extend([match, spec.search[0]])
            where = self._where(params)
            sql = f"""
                SELECT d.* FROM documents_fts
                JOIN documents d ON d.seq = documents_fts.doc_seq
                WHERE documents_fts MATCH ? AND documents_fts.index_name = ? AND {where}
                ORDER BY bm25(documents_fts), d.seq DESC
            """
            with self._store._get_connection() as conn:
                rows = conn.execute(sql, params).fetchall()
            ranked = [(pos, self._store._to_doc(row)) for pos, row in enumerate(rows)]
            if after is not None:
                ranked = [r for r in ranked if r[0] > after]
            return ranked[:limit] if limit is not None else ranked

        where = self._where(params)
        if after is not None:
            where += " AND d.seq < ?" if spec.descending else " AND d.seq > ?"
            params.append(after)
        sql = f"SELECT d.* FROM documents d WHERE {where} ORDER BY d.seq {'DESC' if spec.descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._store._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [(row["seq"], self._store._to_doc(row)) for row in rows]


class SqliteDocumentStore:
    """SQLite-backed implementation of DocumentStore.

    Thread safety:
        Each operation outside a transaction opens its own connection.
        transaction() serializes operations within the process and pins
        them to a single connection; SQLite WAL mode handles readers.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/lazycrud/app.db", registry)
        >>> await store.connect()
        >>> doc_id = await store.insert("blog", {"title": "Hello"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        registry: SchemaRegistry,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
        clock=None,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file
            registry: Table definitions (indexes and search indexes)
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
            clock: Millisecond clock for _creation_time
        """
        self.db_path = Path(db_path)
        self.registry = registry
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._connected = False
        self._lock = TransactionLock()
        self._tx_conn: Optional[sqlite3.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _open(self) -> sqlite3.Connection:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit unless BEGIN is issued
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        if self._tx_conn is not None and self._lock.held_here():
            yield self._tx_conn
            return
        conn = self._open()
        try:
            yield conn
        finally:
            conn.close()

    async def connect(self) -> None:
        """Create the database file, schema and expression indexes."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connected = True
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.info("SqliteDocumentStore connected", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                table_name TEXT NOT NULL,
                creation_time INTEGER NOT NULL,
                body_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_documents_table
                ON documents(table_name, seq);

            CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
                search_text,
                index_name UNINDEXED,
                doc_seq UNINDEXED,
                tokenize='unicode61'
            );
            """
        )
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, int(time.time() * 1000)),
        )
        for table in self.registry.tables():
            for index in table.indexes:
                columns = ", ".join(_json_path(name) for name in index.fields)
                name = f"ix_{table.name}_{index.name}"
                if not _IDENTIFIER.match(name):
                    raise StoreError(f"Index name not usable in SQL: {name!r}")
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {name} ON documents(table_name, {columns})"
                )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._lock.hold() as outermost:
            if not outermost:
                yield
                return
            conn = self._open()
            try:
                conn.execute("BEGIN IMMEDIATE")
                self._tx_conn = conn
                try:
                    yield
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    logger.debug("Rolled back transaction", extra={"db_path": str(self.db_path)})
                    raise
                conn.execute("COMMIT")
            finally:
                self._tx_conn = None
                conn.close()

    def _to_doc(self, row: sqlite3.Row) -> Document:
        doc = json.loads(row["body_json"])
        doc["_id"] = row["id"]
        doc["_creation_time"] = row["creation_time"]
        return doc

    def _table(self, name: str) -> TableDef:
        table = self.registry.get(name)
        if table is None:
            raise StoreError(f"Unknown table '{name}'")
        return table

    def _index_search(self, conn: sqlite3.Connection, table: TableDef, seq: int, body: Mapping[str, Any]) -> None:
        conn.execute("DELETE FROM documents_fts WHERE doc_seq = ?", (seq,))
        for search in table.search_indexes:
            text = body.get(search.field)
            if isinstance(text, str) and text:
                conn.execute(
                    "INSERT INTO documents_fts (search_text, index_name, doc_seq) VALUES (?, ?, ?)",
                    (text, search.name, seq),
                )

    async def get(self, doc_id: str, table: Optional[str] = None) -> Optional[Document]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
        if row is None or (table is not None and row["table_name"] != table):
            return None
        return self._to_doc(row)

    async def insert(self, table: str, data: Mapping[str, Any]) -> str:
        table_def = self._table(table)
        doc_id = uuid.uuid4().hex
        body = strip_none({k: v for k, v in data.items() if k not in ("_id", "_creation_time")})
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO documents (id, table_name, creation_time, body_json)
                VALUES (?, ?, ?, ?)
                """,
                (doc_id, table, self._clock(), json.dumps(body)),
            )
            self._index_search(conn, table_def, cursor.lastrowid, body)
        logger.debug("Inserted document", extra={"table": table, "doc_id": doc_id})
        return doc_id

    async def patch(self, doc_id: str, partial: Mapping[str, Any]) -> None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
            if row is None:
                raise DocumentNotFoundError(f"Document not found: {doc_id}")
            body = json.loads(row["body_json"])
            for key, value in partial.items():
                if key in ("_id", "_creation_time"):
                    continue
                if value is None:
                    body.pop(key, None)
                else:
                    body[key] = value
            conn.execute(
                "UPDATE documents SET body_json = ? WHERE seq = ?",
                (json.dumps(body), row["seq"]),
            )
            self._index_search(conn, self._table(row["table_name"]), row["seq"], body)

    async def delete(self, doc_id: str) -> None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT seq FROM documents WHERE id = ?", (doc_id,)).fetchone()
            if row is None:
                raise DocumentNotFoundError(f"Document not found: {doc_id}")
            conn.execute("DELETE FROM documents_fts WHERE doc_seq = ?", (row["seq"],))
            conn.execute("DELETE FROM documents WHERE seq = ?", (row["seq"],))

    def query(self, table: str) -> SqliteQuery:
        return SqliteQuery(QuerySpec(table=self._table(table)), self)
