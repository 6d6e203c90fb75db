"""
Operation set for tables of single-owner documents.

Generated operations (for table "blog"):
    blog.create, blog.update, blog.rm, blog.restore (soft delete only),
    blog.bulk_create, blog.bulk_update, blog.bulk_rm,
    blog.auth.list / read / search, blog.pub.list / read / search,
    blog.auth_indexed, blog.pub_indexed

Invariants:
    - Only the owner may update, remove or restore a document; for
      anyone else the document does not exist (NOT_FOUND)
    - A where clause that is only own=True is served from by_user,
      anything else is pushed to the store as a filter expression
    - Search and index lookups filter in memory after the store call
      and report large result sets
    - Cascades run on hard delete only

How to change safely:
    - Keep operation names stable; HTTP clients address them by name
    - Any new read path must apply live() and match the where clause
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..builders import Builders, Operation
from ..config import Cascade, RateLimit
from ..context import MutationContext, ReadContext, Runtime
from ..errors import validation_error
from ..files import clean_files, detect_files
from ..middleware import CrudHooks, merge_hooks
from ..ratelimit import check_rate_limit
from ..schema.types import TableDef
from ..schema.validate import validate_or_raise
from ..store.base import Document, UnknownIndexError
from ..where import build_where_expr, can_use_own_index, match_where, parse_where, warn_large_filter_set
from .common import TableHooks, cascade_delete, check_bulk, fb, fetch_page, live, page_opts

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadApi:
    """list/read/search for one audience (auth or pub)."""

    list: Operation
    read: Operation
    search: Optional[Operation] = None


class OwnedCrud:
    """Generated operations for an owned table.

    Example:
        >>> blog = engine.crud(Blog, soft_delete=True)
        >>> post_id = await blog.create(request, title="Hello")
        >>> await blog.auth.list(request, where={"own": True})
    """

    def __init__(
        self,
        runtime: Runtime,
        builders: Builders,
        table: TableDef,
        soft_delete: bool = False,
        hooks: Optional[CrudHooks] = None,
        rate_limit: Optional[RateLimit] = None,
        cascade: Sequence[Cascade] = (),
        auth_where: Optional[Mapping[str, Any]] = None,
        pub_where: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.runtime = runtime
        self.table = table
        self.name = table.name
        self.soft_delete = soft_delete
        self.rate_limit = rate_limit
        self.cascade = tuple(cascade)
        self.hooks = TableHooks(merge_hooks(runtime.global_hooks, hooks))
        self.file_fields = detect_files(table)
        self.search_index = table.search_indexes[0] if table.search_indexes else None
        self.auth_where = parse_where(table, auth_where)
        self.pub_where = parse_where(table, pub_where)

        n = self.name
        m = builders.mutation
        self.create = m.define(f"{n}.create", self._create)
        self.update = m.define(f"{n}.update", self._update)
        self.rm = m.define(f"{n}.rm", self._rm)
        self.restore = m.define(f"{n}.restore", self._restore) if soft_delete else None
        self.bulk_create = m.define(f"{n}.bulk_create", self._bulk_create, per_item=True)
        self.bulk_update = m.define(f"{n}.bulk_update", self._bulk_update, per_item=True)
        self.bulk_rm = m.define(f"{n}.bulk_rm", self._bulk_rm, per_item=True)

        self.auth = self._read_api(builders, "auth", self.auth_where)
        self.pub = self._read_api(builders, "pub", self.pub_where)
        self.auth_indexed = builders.query.define(
            f"{n}.auth_indexed", self._indexed_handler(self.auth_where)
        )
        self.pub_indexed = builders.public_query.define(
            f"{n}.pub_indexed", self._indexed_handler(self.pub_where)
        )

    def _read_api(
        self, builders: Builders, audience: str, default_where: Optional[Dict[str, Any]]
    ) -> ReadApi:
        builder = builders.query if audience == "auth" else builders.public_query
        prefix = f"{self.name}.{audience}"

        async def list_handler(ctx: ReadContext, pagination_opts: Any = None, where: Any = None):
            return await self._list(ctx, pagination_opts, self._where(where, default_where))

        async def read_handler(ctx: ReadContext, id: str, own: Optional[bool] = None, where: Any = None):
            return await self._read(ctx, id, own, self._where(where, default_where))

        async def search_handler(ctx: ReadContext, query: str, where: Any = None):
            return await self._search(ctx, query, self._where(where, default_where))

        return ReadApi(
            list=builder.define(f"{prefix}.list", list_handler),
            read=builder.define(f"{prefix}.read", read_handler),
            search=(
                builder.define(f"{prefix}.search", search_handler)
                if self.search_index is not None
                else None
            ),
        )

    def _indexed_handler(self, default_where: Optional[Dict[str, Any]]):
        async def handler(ctx: ReadContext, index: str, key: str, value: Any, where: Any = None):
            return await self._indexed(ctx, index, key, value, self._where(where, default_where))

        return handler

    def _where(self, where: Any, default: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if where is None:
            return default
        return parse_where(self.table, where)

    def _label(self, op: str) -> str:
        return f"{self.name}:{op}"

    # =========================================================================
    # Mutations
    # =========================================================================

    async def _insert(self, ctx: MutationContext, data: Mapping[str, Any]) -> str:
        data = validate_or_raise(self.table, data)
        if self.rate_limit is not None:
            await check_rate_limit(ctx.db, self.name, ctx.user_id, self.rate_limit, ctx.now())
        hctx = ctx.hook_context(self.name)
        data = await self.hooks.before_create(hctx, data)
        doc_id = await ctx.create(self.name, data)
        await self.hooks.after_create(hctx, doc_id, data)
        logger.info("crud:create", extra={"table": self.name, "doc_id": doc_id, "user_id": ctx.user_id})
        return doc_id

    async def _create(self, ctx: MutationContext, **data: Any) -> str:
        return await self._insert(ctx, data)

    async def _apply_update(
        self,
        ctx: MutationContext,
        prev: Document,
        patch: Dict[str, Any],
        expected_updated_at: Optional[int],
        label: str,
    ) -> Document:
        ctx.check_version(prev, expected_updated_at, label)
        hctx = ctx.hook_context(self.name)
        patch = await self.hooks.before_update(hctx, prev["_id"], patch, prev)
        doc = await ctx.patch_doc(prev, patch, expected_updated_at, label)
        await clean_files(ctx.storage, prev, self.file_fields, patch)
        await self.hooks.after_update(hctx, prev["_id"], patch, prev)
        logger.info("crud:update", extra={"table": self.name, "doc_id": prev["_id"]})
        return doc

    async def _update(
        self,
        ctx: MutationContext,
        id: str,
        expected_updated_at: Optional[int] = None,
        **patch: Any,
    ) -> Document:
        label = self._label("update")
        patch = validate_or_raise(self.table, patch, partial=True)
        prev = await ctx.get_owned(self.name, id, label)
        return await self._apply_update(ctx, prev, patch, expected_updated_at, label)

    async def _remove(self, ctx: MutationContext, doc: Document) -> Document:
        doc_id = doc["_id"]
        hctx = ctx.hook_context(self.name)
        await self.hooks.before_delete(hctx, doc_id, doc)
        if self.soft_delete:
            await ctx.patch_doc(doc, {"deleted_at": ctx.now()})
        else:
            await cascade_delete(ctx, self.cascade, doc_id)
            await ctx.db.delete(doc_id)
            await clean_files(ctx.storage, doc, self.file_fields)
        await self.hooks.after_delete(hctx, doc_id, doc)
        logger.info(
            "crud:delete",
            extra={"table": self.name, "doc_id": doc_id, "soft": self.soft_delete},
        )
        return doc

    async def _rm(self, ctx: MutationContext, id: str) -> Document:
        doc = await ctx.get_owned(self.name, id, self._label("rm"))
        return await self._remove(ctx, doc)

    async def _restore(self, ctx: MutationContext, id: str) -> Document:
        label = self._label("restore")
        doc = await ctx.get_owned(self.name, id, label)
        restored = await ctx.patch_doc(doc, {"deleted_at": None}, label=label)
        logger.info("crud:restore", extra={"table": self.name, "doc_id": id})
        return restored

    async def _bulk_create(self, ctx: MutationContext, items: List[Dict[str, Any]]) -> List[str]:
        check_bulk(len(items), ctx.settings, self._label("bulk_create"))
        ids = []
        for item in items:
            async with ctx.db.transaction():
                ids.append(await self._insert(ctx, item))
        return ids

    async def _bulk_update(
        self, ctx: MutationContext, ids: List[str], data: Dict[str, Any]
    ) -> List[Document]:
        label = self._label("bulk_update")
        check_bulk(len(ids), ctx.settings, label)
        patch = validate_or_raise(self.table, data, partial=True)
        results = []
        for doc_id in ids:
            async with ctx.db.transaction():
                prev = await ctx.db.get(doc_id, self.name)
                if prev is None or prev.get("user_id") != ctx.user_id:
                    continue
                results.append(await self._apply_update(ctx, prev, dict(patch), None, label))
        return results

    async def _bulk_rm(self, ctx: MutationContext, ids: List[str]) -> int:
        check_bulk(len(ids), ctx.settings, self._label("bulk_rm"))
        deleted = 0
        for doc_id in ids:
            async with ctx.db.transaction():
                doc = await ctx.db.get(doc_id, self.name)
                if doc is None or doc.get("user_id") != ctx.user_id:
                    continue
                await self._remove(ctx, doc)
                deleted += 1
        return deleted

    # =========================================================================
    # Reads
    # =========================================================================

    def _visible(self, doc: Document) -> bool:
        return not (self.soft_delete and doc.get("deleted_at") is not None)

    async def _list(
        self,
        ctx: ReadContext,
        pagination_opts: Any,
        where: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        opts = page_opts(pagination_opts, ctx.settings)
        query = ctx.db.query(self.name)
        if can_use_own_index(where) and ctx.viewer_id is not None:
            query = query.with_index("by_user", {"user_id": ctx.viewer_id})
        query = live(query, self.soft_delete)
        expr = build_where_expr(fb, where, ctx.viewer_id)
        if expr is not None:
            query = query.filter(expr)
        page = await fetch_page(query.order("desc"), opts)
        page.page = await ctx.enrich(page.page, self.file_fields)
        return page.to_dict()

    async def _read(
        self,
        ctx: ReadContext,
        doc_id: str,
        own: Optional[bool],
        where: Optional[Dict[str, Any]],
    ) -> Optional[Document]:
        doc = await ctx.db.get(doc_id, self.name)
        if doc is None or not self._visible(doc):
            return None
        if not match_where(doc, where, ctx.viewer_id):
            return None
        if own and (ctx.viewer_id is None or doc.get("user_id") != ctx.viewer_id):
            return None
        return (await ctx.enrich([doc], self.file_fields))[0]

    def _report(self, ctx: ReadContext, count: int, context: str) -> None:
        warn_large_filter_set(
            count,
            self.name,
            context,
            strict=ctx.settings.strict_filter,
            threshold=ctx.settings.large_filter_threshold,
        )

    async def _search(
        self, ctx: ReadContext, text: str, where: Optional[Dict[str, Any]]
    ) -> List[Document]:
        results = await (
            ctx.db.query(self.name).with_search_index(self.search_index.name, text).collect()
        )
        self._report(ctx, len(results), "search")
        matched = [
            doc for doc in results if self._visible(doc) and match_where(doc, where, ctx.viewer_id)
        ]
        return await ctx.enrich(matched, self.file_fields)

    async def _indexed(
        self,
        ctx: ReadContext,
        index: str,
        key: str,
        value: Any,
        where: Optional[Dict[str, Any]],
    ) -> List[Document]:
        try:
            query = ctx.db.query(self.name).with_index(index, {key: value})
        except UnknownIndexError as e:
            raise validation_error([("index", str(e))]) from e
        query = live(query, self.soft_delete)
        expr = build_where_expr(fb, where, ctx.viewer_id)
        if expr is not None:
            query = query.filter(expr)
        docs = await query.order("desc").collect()
        self._report(ctx, len(docs), "indexed")
        return await ctx.enrich(docs, self.file_fields)
