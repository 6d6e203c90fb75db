"""
Document store layer for lazycrud.

Provides the store contract the engine consumes plus two backends:
- InMemoryDocumentStore: tests and local development
- SqliteDocumentStore: single-file persistence with FTS5 search
"""

from .base import (
    Document,
    DocumentNotFoundError,
    DocumentStore,
    MalformedCursorError,
    Page,
    PaginationOpts,
    Query,
    StoreConnectionError,
    StoreError,
    UnknownIndexError,
)
from .expr import FilterBuilder, evaluate, same_value
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    "Document",
    "DocumentStore",
    "Query",
    "Page",
    "PaginationOpts",
    "StoreError",
    "StoreConnectionError",
    "UnknownIndexError",
    "DocumentNotFoundError",
    "MalformedCursorError",
    "FilterBuilder",
    "evaluate",
    "same_value",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
