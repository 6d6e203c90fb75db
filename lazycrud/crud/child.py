"""
Operation set for child tables whose authorization lives on the parent.

Every call re-fetches the parent and checks that the caller owns it;
nothing about the parent is copied onto the child row. Children are
listed in insertion order, optionally capped with limit.

With pub_field set, a public sub-API (pub.get, pub.list) serves
children whose parent has that field truthy, e.g. a published flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..builders import Builders, Operation
from ..context import MutationContext, ReadContext, Runtime
from ..errors import ErrorCode, err, validation_error
from ..files import add_urls, clean_files, detect_files
from ..middleware import CrudHooks, merge_hooks
from ..schema.types import TableDef
from ..schema.validate import validate_or_raise
from ..store.base import Document
from .common import TableHooks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChildPublicApi:
    get: Operation
    list: Operation


class ChildCrud:
    """Generated operations for a child table.

    Example:
        >>> messages = engine.child_crud(Message, pub_field="is_public")
        >>> await messages.create(request, chat_id=chat_id, text="hi")
        >>> await messages.list(request, chat_id=chat_id, limit=50)
    """

    def __init__(
        self,
        runtime: Runtime,
        builders: Builders,
        table: TableDef,
        hooks: Optional[CrudHooks] = None,
        pub_field: Optional[str] = None,
    ) -> None:
        parent_def = runtime.store.registry.require(table.parent)
        if pub_field is not None and parent_def.get_field(pub_field) is None:
            raise ValueError(f"pub_field '{pub_field}' is not a field of '{table.parent}'")
        self.runtime = runtime
        self.table = table
        self.name = table.name
        self.parent = table.parent
        self.foreign_key = table.foreign_key
        self.index = table.indexes[0].name
        self.pub_field = pub_field
        self.hooks = TableHooks(merge_hooks(runtime.global_hooks, hooks))
        self.file_fields = detect_files(table)

        n = self.name
        m, q = builders.mutation, builders.query
        self.create = m.define(f"{n}.create", self._create)
        self.get = q.define(f"{n}.get", self._get)
        self.list = q.define(f"{n}.list", self._list)
        self.update = m.define(f"{n}.update", self._update)
        self.rm = m.define(f"{n}.rm", self._rm)
        self.pub = None
        if pub_field is not None:
            self.pub = ChildPublicApi(
                get=builders.public_query.define(f"{n}.pub.get", self._pub_get),
                list=builders.public_query.define(f"{n}.pub.list", self._pub_list),
            )

    def _label(self, op: str) -> str:
        return f"{self.name}:{op}"

    async def verify_parent_ownership(self, ctx: ReadContext, parent_id: Any) -> Optional[Document]:
        """The parent document if the caller owns it, else None."""
        if not isinstance(parent_id, str):
            return None
        parent = await ctx.db.get(parent_id, self.parent)
        if parent is None or parent.get("user_id") != ctx.viewer_id:
            return None
        return parent

    async def check_parent_field(self, ctx: ReadContext, parent_id: Any) -> Optional[Document]:
        """The parent document if its pub_field is truthy, else None."""
        if not isinstance(parent_id, str):
            return None
        parent = await ctx.db.get(parent_id, self.parent)
        if parent is None or not parent.get(self.pub_field):
            return None
        return parent

    def _parent_arg(self, args: Dict[str, Any]) -> str:
        parent_id = args.pop(self.foreign_key, None)
        issues = [(k, f"Unexpected argument '{k}'") for k in sorted(args)]
        if parent_id is None:
            issues.append((self.foreign_key, f"Field '{self.foreign_key}' is required"))
        if issues:
            raise validation_error(issues)
        return parent_id

    async def _children(self, ctx: ReadContext, parent_id: str, limit: Optional[int]) -> List[Document]:
        query = (
            ctx.db.query(self.name)
            .with_index(self.index, {self.foreign_key: parent_id})
            .order("asc")
        )
        docs = await (query.take(limit) if limit else query.collect())
        return [await add_urls(ctx.storage, doc, self.file_fields) for doc in docs]

    async def _create(self, ctx: MutationContext, **data: Any) -> str:
        data = validate_or_raise(self.table, data)
        parent_id = data[self.foreign_key]
        if await self.verify_parent_ownership(ctx, parent_id) is None:
            raise err(ErrorCode.NOT_FOUND, self._label("create"))
        hctx = ctx.hook_context(self.name)
        data = await self.hooks.before_create(hctx, data)
        doc_id = await ctx.create(self.name, {**data, self.foreign_key: parent_id}, owned=False)
        await self.hooks.after_create(hctx, doc_id, data)
        logger.info(
            "crud:create",
            extra={"table": self.name, "doc_id": doc_id, "parent_id": parent_id},
        )
        return doc_id

    async def _owned_child(self, ctx: ReadContext, doc_id: str, label: str, code: ErrorCode) -> Document:
        doc = await ctx.db.get(doc_id, self.name)
        if doc is None:
            raise err(ErrorCode.NOT_FOUND, label)
        if await self.verify_parent_ownership(ctx, doc.get(self.foreign_key)) is None:
            raise err(code, label)
        return doc

    async def _update(self, ctx: MutationContext, id: str, **patch: Any) -> Document:
        label = self._label("update")
        if self.foreign_key in patch:
            raise validation_error([(self.foreign_key, "A child cannot move to another parent")])
        patch = validate_or_raise(self.table, patch, partial=True)
        prev = await self._owned_child(ctx, id, label, ErrorCode.NOT_FOUND)
        hctx = ctx.hook_context(self.name)
        patch = await self.hooks.before_update(hctx, id, patch, prev)
        doc = await ctx.patch_doc(prev, patch, label=label)
        await clean_files(ctx.storage, prev, self.file_fields, patch)
        await self.hooks.after_update(hctx, id, patch, prev)
        logger.info("crud:update", extra={"table": self.name, "doc_id": id})
        return doc

    async def _rm(self, ctx: MutationContext, id: str) -> Document:
        doc = await self._owned_child(ctx, id, self._label("rm"), ErrorCode.NOT_FOUND)
        hctx = ctx.hook_context(self.name)
        await self.hooks.before_delete(hctx, id, doc)
        await ctx.db.delete(id)
        await clean_files(ctx.storage, doc, self.file_fields)
        await self.hooks.after_delete(hctx, id, doc)
        logger.info("crud:delete", extra={"table": self.name, "doc_id": id})
        return doc

    async def _get(self, ctx: ReadContext, id: str) -> Optional[Document]:
        doc = await ctx.db.get(id, self.name)
        if doc is None:
            return None
        if await self.verify_parent_ownership(ctx, doc.get(self.foreign_key)) is None:
            raise err(ErrorCode.NOT_AUTHORIZED, self._label("get"))
        return await add_urls(ctx.storage, doc, self.file_fields)

    async def _list(self, ctx: ReadContext, limit: Optional[int] = None, **args: Any) -> List[Document]:
        parent_id = self._parent_arg(args)
        if await self.verify_parent_ownership(ctx, parent_id) is None:
            raise err(ErrorCode.NOT_AUTHORIZED, self._label("list"))
        return await self._children(ctx, parent_id, limit)

    async def _pub_get(self, ctx: ReadContext, id: str) -> Optional[Document]:
        doc = await ctx.db.get(id, self.name)
        if doc is None:
            return None
        if await self.check_parent_field(ctx, doc.get(self.foreign_key)) is None:
            raise err(ErrorCode.NOT_FOUND, self._label("pub.get"))
        return await add_urls(ctx.storage, doc, self.file_fields)

    async def _pub_list(self, ctx: ReadContext, limit: Optional[int] = None, **args: Any) -> List[Document]:
        parent_id = self._parent_arg(args)
        if await self.check_parent_field(ctx, parent_id) is None:
            raise err(ErrorCode.NOT_FOUND, self._label("pub.list"))
        return await self._children(ctx, parent_id, limit)
