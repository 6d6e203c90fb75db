"""
Operation set for organization-scoped tables.

Every operation takes org_id. Reads need membership; create needs
membership; update, rm and restore need can_edit (owner/admin, the
document's creator, or a listed editor when the table uses an ACL).
Bulk update and bulk rm need admin.

With acl=True the table also gets editor management, keyed by
"<table>_id":
    add_editor, remove_editor, set_editors (admin) and editors (member)

With acl_from, edit rights come from the editors list of a parent
document referenced by one of the table's fields.

Invariants:
    - A document whose org_id differs from the argument is NOT_FOUND
    - list always starts from the by_org index; the where clause,
      own=True included, is layered on top
    - Every editor must be the org owner or a member
    - Cascades run before the parent row is removed, hard delete only
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..acl import (
    OrgAccess,
    OrgRole,
    assert_can_be_editor,
    can_edit,
    check_editor_limit,
    require_org_member,
    require_org_role,
)
from ..builders import Builders
from ..config import AclFrom, Cascade, RateLimit
from ..context import MutationContext, ReadContext, Runtime
from ..errors import ErrorCode, err, validation_error
from ..files import clean_files, detect_files
from ..middleware import CrudHooks, merge_hooks
from ..ratelimit import check_rate_limit
from ..schema.types import TableDef
from ..schema.validate import validate_or_raise
from ..store.base import Document
from ..where import build_where_expr, match_where, parse_where, warn_large_filter_set
from .common import TableHooks, cascade_delete, check_bulk, fb, fetch_page, live, page_opts

logger = logging.getLogger(__name__)


class OrgCrud:
    """Generated operations for an org-scoped table.

    Example:
        >>> wiki = engine.org_crud(Wiki, acl=True, soft_delete=True)
        >>> wiki_id = await wiki.create(request, org_id=org_id, title="Runbook")
        >>> await wiki.set_editors(admin_request, org_id=org_id, wiki_id=wiki_id, editor_ids=[uid])
    """

    def __init__(
        self,
        runtime: Runtime,
        builders: Builders,
        table: TableDef,
        soft_delete: bool = False,
        hooks: Optional[CrudHooks] = None,
        rate_limit: Optional[RateLimit] = None,
        acl: bool = False,
        acl_from: Optional[AclFrom] = None,
        cascade: Sequence[Cascade] = (),
    ) -> None:
        if acl_from is not None and table.get_field(acl_from.field) is None:
            raise ValueError(
                f"acl_from field '{acl_from.field}' is not a field of '{table.name}'"
            )
        self.runtime = runtime
        self.table = table
        self.name = table.name
        self.soft_delete = soft_delete
        self.rate_limit = rate_limit
        self.acl = acl
        self.acl_from = acl_from
        self.cascade = tuple(cascade)
        self.hooks = TableHooks(merge_hooks(runtime.global_hooks, hooks))
        self.file_fields = detect_files(table)
        self.search_index = table.search_indexes[0] if table.search_indexes else None
        self.item_key = f"{table.name}_id"

        n = self.name
        m, q = builders.mutation, builders.query
        self.create = m.define(f"{n}.create", self._create)
        self.list = q.define(f"{n}.list", self._list)
        self.read = q.define(f"{n}.read", self._read)
        self.search = q.define(f"{n}.search", self._search) if self.search_index else None
        self.update = m.define(f"{n}.update", self._update)
        self.rm = m.define(f"{n}.rm", self._rm)
        self.restore = m.define(f"{n}.restore", self._restore) if soft_delete else None
        self.bulk_create = m.define(f"{n}.bulk_create", self._bulk_create, per_item=True)
        self.bulk_update = m.define(f"{n}.bulk_update", self._bulk_update, per_item=True)
        self.bulk_rm = m.define(f"{n}.bulk_rm", self._bulk_rm, per_item=True)
        if acl:
            self.add_editor = m.define(f"{n}.add_editor", self._add_editor)
            self.remove_editor = m.define(f"{n}.remove_editor", self._remove_editor)
            self.set_editors = m.define(f"{n}.set_editors", self._set_editors)
            self.editors = q.define(f"{n}.editors", self._editors)

    def _label(self, op: str) -> str:
        return f"{self.name}:{op}"

    async def _org_doc(self, ctx: ReadContext, doc_id: str, org_id: str, label: str) -> Document:
        doc = await ctx.db.get(doc_id, self.name)
        if doc is None or doc.get("org_id") != org_id:
            raise err(ErrorCode.NOT_FOUND, label)
        return doc

    async def _require_edit(
        self, ctx: MutationContext, access: OrgAccess, doc: Document, label: str
    ) -> None:
        parent = None
        if self.acl_from is not None:
            parent_id = doc.get(self.acl_from.field)
            if parent_id:
                parent = await ctx.db.get(parent_id, self.acl_from.table)
            parent = parent or {}
        uses_acl = self.acl or self.acl_from is not None
        if not can_edit(access.role, doc, ctx.user_id, acl=uses_acl, parent=parent):
            raise err(ErrorCode.FORBIDDEN, label)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def _insert(self, ctx: MutationContext, org_id: str, data: Mapping[str, Any]) -> str:
        data = validate_or_raise(self.table, data)
        if self.rate_limit is not None:
            await check_rate_limit(ctx.db, self.name, ctx.user_id, self.rate_limit, ctx.now())
        hctx = ctx.hook_context(self.name)
        data = await self.hooks.before_create(hctx, data)
        doc_id = await ctx.create(self.name, {**data, "org_id": org_id})
        await self.hooks.after_create(hctx, doc_id, data)
        logger.info(
            "crud:create",
            extra={"table": self.name, "doc_id": doc_id, "org_id": org_id, "user_id": ctx.user_id},
        )
        return doc_id

    async def _create(self, ctx: MutationContext, org_id: str, **data: Any) -> str:
        await require_org_member(ctx.db, org_id, ctx.user_id, self._label("create"))
        return await self._insert(ctx, org_id, data)

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
        org_id: str,
        id: str,
        expected_updated_at: Optional[int] = None,
        **patch: Any,
    ) -> Document:
        label = self._label("update")
        patch = validate_or_raise(self.table, patch, partial=True)
        access = await require_org_member(ctx.db, org_id, ctx.user_id, label)
        prev = await self._org_doc(ctx, id, org_id, label)
        await self._require_edit(ctx, access, prev, label)
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

    async def _rm(self, ctx: MutationContext, org_id: str, id: str) -> Document:
        label = self._label("rm")
        access = await require_org_member(ctx.db, org_id, ctx.user_id, label)
        doc = await self._org_doc(ctx, id, org_id, label)
        await self._require_edit(ctx, access, doc, label)
        return await self._remove(ctx, doc)

    async def _restore(self, ctx: MutationContext, org_id: str, id: str) -> Document:
        label = self._label("restore")
        access = await require_org_member(ctx.db, org_id, ctx.user_id, label)
        doc = await self._org_doc(ctx, id, org_id, label)
        await self._require_edit(ctx, access, doc, label)
        restored = await ctx.patch_doc(doc, {"deleted_at": None}, label=label)
        logger.info("crud:restore", extra={"table": self.name, "doc_id": id})
        return restored

    async def _bulk_create(
        self, ctx: MutationContext, org_id: str, items: List[Dict[str, Any]]
    ) -> List[str]:
        label = self._label("bulk_create")
        check_bulk(len(items), ctx.settings, label)
        await require_org_member(ctx.db, org_id, ctx.user_id, label)
        ids = []
        for item in items:
            async with ctx.db.transaction():
                ids.append(await self._insert(ctx, org_id, item))
        return ids

    async def _bulk_update(
        self, ctx: MutationContext, org_id: str, ids: List[str], data: Dict[str, Any]
    ) -> List[Document]:
        label = self._label("bulk_update")
        check_bulk(len(ids), ctx.settings, label)
        patch = validate_or_raise(self.table, data, partial=True)
        await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        results = []
        for doc_id in ids:
            async with ctx.db.transaction():
                prev = await ctx.db.get(doc_id, self.name)
                if prev is None or prev.get("org_id") != org_id:
                    continue
                results.append(await self._apply_update(ctx, prev, dict(patch), None, label))
        return results

    async def _bulk_rm(self, ctx: MutationContext, org_id: str, ids: List[str]) -> int:
        label = self._label("bulk_rm")
        check_bulk(len(ids), ctx.settings, label)
        await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        deleted = 0
        for doc_id in ids:
            async with ctx.db.transaction():
                doc = await ctx.db.get(doc_id, self.name)
                if doc is None or doc.get("org_id") != org_id:
                    continue
                await self._remove(ctx, doc)
                deleted += 1
        return deleted

    # =========================================================================
    # Editors
    # =========================================================================

    def _item_id(self, args: Dict[str, Any]) -> str:
        item_id = args.pop(self.item_key, None)
        unexpected = sorted(args)
        if item_id is None or unexpected:
            issues = [(k, f"Unexpected argument '{k}'") for k in unexpected]
            if item_id is None:
                issues.append((self.item_key, f"Field '{self.item_key}' is required"))
            raise validation_error(issues)
        return item_id

    async def _add_editor(
        self, ctx: MutationContext, org_id: str, editor_id: str, **args: Any
    ) -> Document:
        label = self._label("add_editor")
        item_id = self._item_id(args)
        access = await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        doc = await self._org_doc(ctx, item_id, org_id, label)
        await assert_can_be_editor(ctx.db, access.org, editor_id, label)
        editors = list(doc.get("editors") or [])
        if editor_id in editors:
            return doc
        editors = check_editor_limit([*editors, editor_id], ctx.settings.max_editors, label)
        return await ctx.patch_doc(doc, {"editors": editors}, label=label)

    async def _remove_editor(
        self, ctx: MutationContext, org_id: str, editor_id: str, **args: Any
    ) -> Document:
        label = self._label("remove_editor")
        item_id = self._item_id(args)
        await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        doc = await self._org_doc(ctx, item_id, org_id, label)
        editors = [e for e in doc.get("editors") or [] if e != editor_id]
        return await ctx.patch_doc(doc, {"editors": editors}, label=label)

    async def _set_editors(
        self, ctx: MutationContext, org_id: str, editor_ids: List[str], **args: Any
    ) -> Document:
        label = self._label("set_editors")
        item_id = self._item_id(args)
        access = await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        doc = await self._org_doc(ctx, item_id, org_id, label)
        editors = check_editor_limit(editor_ids, ctx.settings.max_editors, label)
        for editor_id in editors:
            await assert_can_be_editor(ctx.db, access.org, editor_id, label)
        return await ctx.patch_doc(doc, {"editors": editors}, label=label)

    async def _editors(self, ctx: ReadContext, org_id: str, **args: Any) -> List[Dict[str, Any]]:
        label = self._label("editors")
        item_id = self._item_id(args)
        await require_org_member(ctx.db, org_id, ctx.viewer_id, label)
        doc = await self._org_doc(ctx, item_id, org_id, label)
        result = []
        for editor_id in doc.get("editors") or []:
            user = await ctx.db.get(editor_id, "users")
            if user is not None:
                result.append(
                    {
                        "user_id": editor_id,
                        "name": user.get("name", ""),
                        "email": user.get("email", ""),
                    }
                )
        return result

    # =========================================================================
    # Reads
    # =========================================================================

    def _visible(self, doc: Document) -> bool:
        return not (self.soft_delete and doc.get("deleted_at") is not None)

    async def _list(
        self,
        ctx: ReadContext,
        org_id: str,
        pagination_opts: Any = None,
        where: Any = None,
    ) -> Dict[str, Any]:
        await require_org_member(ctx.db, org_id, ctx.viewer_id, self._label("list"))
        where = parse_where(self.table, where)
        opts = page_opts(pagination_opts, ctx.settings)
        query = live(ctx.db.query(self.name).with_index("by_org", {"org_id": org_id}), self.soft_delete)
        expr = build_where_expr(fb, where, ctx.viewer_id)
        if expr is not None:
            query = query.filter(expr)
        page = await fetch_page(query.order("desc"), opts)
        page.page = await ctx.enrich(page.page, self.file_fields)
        return page.to_dict()

    async def _read(self, ctx: ReadContext, org_id: str, id: str) -> Document:
        label = self._label("read")
        await require_org_member(ctx.db, org_id, ctx.viewer_id, label)
        doc = await self._org_doc(ctx, id, org_id, label)
        if not self._visible(doc):
            raise err(ErrorCode.NOT_FOUND, label)
        return (await ctx.enrich([doc], self.file_fields))[0]

    async def _search(
        self, ctx: ReadContext, org_id: str, query: str, where: Any = None
    ) -> List[Document]:
        await require_org_member(ctx.db, org_id, ctx.viewer_id, self._label("search"))
        where = parse_where(self.table, where)
        results = await (
            ctx.db.query(self.name).with_search_index(self.search_index.name, query).collect()
        )
        warn_large_filter_set(
            len(results),
            self.name,
            "search",
            strict=ctx.settings.strict_filter,
            threshold=ctx.settings.large_filter_threshold,
        )
        matched = [
            doc
            for doc in results
            if doc.get("org_id") == org_id
            and self._visible(doc)
            and match_where(doc, where, ctx.viewer_id)
        ]
        return await ctx.enrich(matched, self.file_fields)
