"""
Request-scoped contexts handed to operation handlers.

ReadContext serves queries: it knows the viewer (possibly None) and
enriches results with author info and file URLs. MutationContext adds
the write surface that stamps ownership and updated_at and enforces
optimistic concurrency.

Invariants:
    - create() stamps user_id and updated_at server-side; payload values
      for those keys are overwritten
    - updated_at strictly increases per document: every write stamps
      max(now, previous + 1), so expected_updated_at identifies one version
    - A mismatched expected_updated_at fails CONFLICT before any write
    - Contexts live for exactly one operation
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from .config import Settings
from .errors import ErrorCode, err
from .files import FileField, FileStorage, add_urls
from .middleware import CrudHooks, HookContext
from .store.base import Document, DocumentStore

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
UserResolver = Callable[[Any], Union[Optional[str], Awaitable[Optional[str]]]]


def now_ms() -> int:
    return int(time.time() * 1000)


def merge_patch(prev: Mapping[str, Any], patch: Mapping[str, Any]) -> Document:
    """Apply patch to prev: present keys overwrite, None removes."""
    merged = dict(prev)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def next_updated_at(prev: Optional[int], now: int) -> int:
    if prev is None:
        return now
    return max(now, prev + 1)


@dataclass
class Runtime:
    """Dependencies shared by every operation of an engine."""

    store: DocumentStore
    settings: Settings
    resolve_user_id: UserResolver
    storage: Optional[FileStorage] = None
    clock: Clock = now_ms
    global_hooks: CrudHooks = field(default_factory=CrudHooks)


@dataclass
class ReadContext:
    """Context for queries.

    Attributes:
        runtime: Engine dependencies
        viewer_id: Caller id, None for anonymous public queries
        user: Caller's users row, when authenticated
    """

    runtime: Runtime
    viewer_id: Optional[str] = None
    user: Optional[Document] = None

    @property
    def db(self) -> DocumentStore:
        return self.runtime.store

    @property
    def storage(self) -> Optional[FileStorage]:
        return self.runtime.storage

    @property
    def settings(self) -> Settings:
        return self.runtime.settings

    def now(self) -> int:
        return self.runtime.clock()

    async def with_author(self, docs: List[Document]) -> List[Document]:
        """Attach author (one fetch per distinct user_id) and own."""
        authors: Dict[str, Optional[Document]] = {}
        for doc in docs:
            uid = doc.get("user_id")
            if uid is not None and uid not in authors:
                authors[uid] = await self.db.get(uid, "users")
        enriched = []
        for doc in docs:
            uid = doc.get("user_id")
            item = dict(doc)
            item["author"] = authors.get(uid) if uid is not None else None
            item["own"] = (uid == self.viewer_id) if self.viewer_id is not None else None
            enriched.append(item)
        return enriched

    async def enrich(self, docs: List[Document], file_fields: List[FileField]) -> List[Document]:
        """Author info plus file URLs."""
        docs = await self.with_author(docs)
        return [await add_urls(self.storage, doc, file_fields) for doc in docs]


@dataclass
class MutationContext(ReadContext):
    """Context for mutations; user_id is None only for public mutations."""

    @property
    def user_id(self) -> Optional[str]:
        return self.viewer_id

    def hook_context(self, table: str) -> HookContext:
        return HookContext(db=self.db, storage=self.storage, user_id=self.user_id, table=table)

    async def create(self, table: str, data: Mapping[str, Any], owned: bool = True) -> str:
        """Insert, stamping updated_at and (when owned) user_id."""
        doc = dict(data)
        doc["updated_at"] = self.now()
        if owned:
            doc["user_id"] = self.user_id
        return await self.db.insert(table, doc)

    async def get_owned(self, table: str, doc_id: str, label: str) -> Document:
        """Fetch a document the caller owns.

        Raises:
            CrudError: NOT_FOUND if missing, in another table, or not owned
        """
        doc = await self.db.get(doc_id, table)
        if doc is None or doc.get("user_id") != self.user_id:
            raise err(ErrorCode.NOT_FOUND, label)
        return doc

    def check_version(
        self,
        prev: Document,
        expected_updated_at: Optional[int],
        label: Optional[str] = None,
    ) -> None:
        """Raises:
            CrudError: CONFLICT when expected_updated_at is given and stale
        """
        if expected_updated_at is not None and prev.get("updated_at") != expected_updated_at:
            logger.info(
                "crud:conflict",
                extra={
                    "doc_id": prev.get("_id"),
                    "expected": expected_updated_at,
                    "actual": prev.get("updated_at"),
                },
            )
            raise err(ErrorCode.CONFLICT, label)

    async def patch_doc(
        self,
        prev: Document,
        patch: Mapping[str, Any],
        expected_updated_at: Optional[int] = None,
        label: Optional[str] = None,
    ) -> Document:
        """Write patch over prev and return the merged document.

        Raises:
            CrudError: CONFLICT when expected_updated_at is stale
        """
        self.check_version(prev, expected_updated_at, label)
        changes = dict(patch)
        changes["updated_at"] = next_updated_at(prev.get("updated_at"), self.now())
        await self.db.patch(prev["_id"], changes)
        return merge_patch(prev, changes)
