"""
Key-addressed cache of externally fetched records.

Entries are addressed by the table's cache key (by_<key> index) and
expire ttl_ms after their last write. No authentication is required.

Invariants:
    - At most one entry per key; create upserts
    - An entry is expired when updated_at + ttl_ms <= now
    - get() hides expired entries unless stale_while_revalidate is set,
      in which case they come back flagged stale
    - load() only calls the fetcher on a miss or an expired entry;
      refresh() always calls it
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..builders import Builders
from ..config import RateLimit
from ..context import MutationContext, ReadContext, Runtime
from ..errors import ErrorCode, err
from ..middleware import CrudHooks, merge_hooks, resolve
from ..ratelimit import check_rate_limit
from ..schema.types import TableDef
from ..schema.validate import validate_or_raise
from ..store.base import Document
from ..store.expr import Expr
from .common import TableHooks, fb, fetch_page, page_opts

logger = logging.getLogger(__name__)

Fetcher = Callable[[Any], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]
Transform = Callable[[Dict[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class CacheCrud:
    """Generated operations for a cache table.

    Example:
        >>> movies = engine.cache_crud(Movie, fetcher=fetch_movie, ttl_ms=DAY_MS)
        >>> movie = await movies.load(request, key=603)
        >>> movie["cache_hit"]
        False
    """

    def __init__(
        self,
        runtime: Runtime,
        builders: Builders,
        table: TableDef,
        fetcher: Optional[Fetcher] = None,
        ttl_ms: Optional[int] = None,
        stale_while_revalidate: bool = False,
        hooks: Optional[CrudHooks] = None,
        on_fetch: Optional[Transform] = None,
        rate_limit: Optional[RateLimit] = None,
    ) -> None:
        if ttl_ms is not None and ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        self.runtime = runtime
        self.table = table
        self.name = table.name
        self.key_field = table.cache_key
        self.index = f"by_{table.cache_key}"
        self.fetcher = fetcher
        self.ttl_ms = ttl_ms if ttl_ms is not None else runtime.settings.cache_ttl_ms
        self.stale_while_revalidate = stale_while_revalidate
        self.on_fetch = on_fetch
        self.rate_limit = rate_limit
        self.hooks = TableHooks(merge_hooks(runtime.global_hooks, hooks))

        n = self.name
        q, m = builders.public_query, builders.public_mutation
        self.get = q.define(f"{n}.get", self._get)
        self.read = q.define(f"{n}.read", self._read)
        self.all = q.define(f"{n}.all", self._all)
        self.list = q.define(f"{n}.list", self._list)
        self.create = m.define(f"{n}.create", self._create)
        self.update = m.define(f"{n}.update", self._update)
        self.rm = m.define(f"{n}.rm", self._rm)
        self.invalidate = m.define(f"{n}.invalidate", self._invalidate)
        self.purge = m.define(f"{n}.purge", self._purge)
        self.load = m.define(f"{n}.load", self._load)
        self.refresh = m.define(f"{n}.refresh", self._refresh)

    def is_expired(self, doc: Document, now: int) -> bool:
        return doc.get("updated_at", 0) + self.ttl_ms <= now

    def fresh_filter(self, now: int) -> Expr:
        """Store filter matching entries is_expired() would keep."""
        return fb.gt(fb.field("updated_at"), now - self.ttl_ms)

    async def _find(self, ctx: ReadContext, key: Any) -> Optional[Document]:
        return await ctx.db.query(self.name).with_index(self.index, {self.key_field: key}).first()

    async def _get(self, ctx: ReadContext, key: Any) -> Optional[Document]:
        doc = await self._find(ctx, key)
        if doc is None:
            return None
        stale = self.is_expired(doc, ctx.now())
        if stale and not self.stale_while_revalidate:
            return None
        return {**doc, "cache_hit": True, "stale": stale}

    async def _read(self, ctx: ReadContext, id: str) -> Optional[Document]:
        return await ctx.db.get(id, self.name)

    async def _all(self, ctx: ReadContext, include_expired: bool = False) -> List[Document]:
        query = ctx.db.query(self.name)
        if not include_expired:
            query = query.filter(self.fresh_filter(ctx.now()))
        return await query.collect()

    async def _list(
        self, ctx: ReadContext, pagination_opts: Any = None, include_expired: bool = False
    ) -> Dict[str, Any]:
        query = ctx.db.query(self.name).order("desc")
        if not include_expired:
            query = query.filter(self.fresh_filter(ctx.now()))
        page = await fetch_page(query, page_opts(pagination_opts, ctx.settings))
        return page.to_dict()

    async def _upsert(self, ctx: MutationContext, data: Dict[str, Any]) -> str:
        data = validate_or_raise(self.table, data)
        hctx = ctx.hook_context(self.name)
        existing = await self._find(ctx, data[self.key_field])
        if existing is not None:
            patch = await self.hooks.before_update(hctx, existing["_id"], data, existing)
            await ctx.patch_doc(existing, patch)
            await self.hooks.after_update(hctx, existing["_id"], patch, existing)
            return existing["_id"]
        data = await self.hooks.before_create(hctx, data)
        doc_id = await ctx.create(self.name, data, owned=False)
        await self.hooks.after_create(hctx, doc_id, data)
        return doc_id

    async def _create(self, ctx: MutationContext, **data: Any) -> str:
        doc_id = await self._upsert(ctx, data)
        logger.info("cache:write", extra={"table": self.name, "doc_id": doc_id})
        return doc_id

    async def _update(self, ctx: MutationContext, id: str, **patch: Any) -> Document:
        patch = validate_or_raise(self.table, patch, partial=True)
        prev = await ctx.db.get(id, self.name)
        if prev is None:
            raise err(ErrorCode.NOT_FOUND, f"{self.name}:update")
        hctx = ctx.hook_context(self.name)
        patch = await self.hooks.before_update(hctx, id, patch, prev)
        doc = await ctx.patch_doc(prev, patch)
        await self.hooks.after_update(hctx, id, patch, prev)
        return doc

    async def _delete(self, ctx: MutationContext, doc: Optional[Document]) -> Optional[Document]:
        if doc is None:
            return None
        hctx = ctx.hook_context(self.name)
        await self.hooks.before_delete(hctx, doc["_id"], doc)
        await ctx.db.delete(doc["_id"])
        await self.hooks.after_delete(hctx, doc["_id"], doc)
        return doc

    async def _rm(self, ctx: MutationContext, id: str) -> Optional[Document]:
        return await self._delete(ctx, await ctx.db.get(id, self.name))

    async def _invalidate(self, ctx: MutationContext, key: Any) -> Optional[Document]:
        doc = await self._delete(ctx, await self._find(ctx, key))
        if doc is not None:
            logger.info("cache:invalidate", extra={"table": self.name, "key": key})
        return doc

    async def _purge(self, ctx: MutationContext) -> int:
        now = ctx.now()
        purged = 0
        for doc in await ctx.db.query(self.name).collect():
            if self.is_expired(doc, now):
                await ctx.db.delete(doc["_id"])
                purged += 1
        logger.info("cache:purge", extra={"table": self.name, "purged": purged})
        return purged

    async def _fetch(self, ctx: MutationContext, key: Any, op: str) -> Document:
        if self.fetcher is None:
            raise err(ErrorCode.NO_FETCHER, f"{self.name}:{op}")
        if self.rate_limit is not None:
            await check_rate_limit(ctx.db, self.name, str(key), self.rate_limit, ctx.now(), op=op)
        data = await resolve(self.fetcher(key))
        if self.on_fetch is not None:
            data = await resolve(self.on_fetch(data))
        doc_id = await self._upsert(ctx, {**data, self.key_field: key})
        logger.info("cache:fetch", extra={"table": self.name, "key": key, "doc_id": doc_id})
        doc = await ctx.db.get(doc_id, self.name)
        return {**doc, "cache_hit": False}

    async def _load(self, ctx: MutationContext, key: Any) -> Document:
        doc = await self._find(ctx, key)
        if doc is not None and not self.is_expired(doc, ctx.now()):
            return {**doc, "cache_hit": True}
        return await self._fetch(ctx, key, "load")

    async def _refresh(self, ctx: MutationContext, key: Any) -> Document:
        return await self._fetch(ctx, key, "refresh")
