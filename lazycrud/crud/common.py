"""
Pieces shared by the table factories.

Invariants:
    - Soft-deleted documents (deleted_at set) never reach list/read/search
    - Bulk limits are checked before the first item is touched
    - Cascade delete runs sequentially, child rows before the parent
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Sequence

from pydantic import ValidationError

from ..config import Cascade, Settings
from ..context import MutationContext
from ..errors import ErrorCode, err, validation_error
from ..files import clean_files, detect_files
from ..middleware import CrudHooks, HookContext
from ..store.base import Document, MalformedCursorError, Page, PaginationOpts, Query
from ..store.expr import Expr, FilterBuilder

logger = logging.getLogger(__name__)

fb = FilterBuilder()


def not_deleted() -> Expr:
    return fb.eq(fb.field("deleted_at"), None)


def live(query: Query, soft_delete: bool) -> Query:
    """Hide soft-deleted rows when the table soft-deletes."""
    return query.filter(not_deleted()) if soft_delete else query


def page_opts(opts: Any, settings: Settings) -> PaginationOpts:
    """Coerce client pagination options.

    Raises:
        CrudError: VALIDATION_FAILED for malformed options
    """
    if opts is None:
        return PaginationOpts(num_items=settings.default_page_size)
    if isinstance(opts, PaginationOpts):
        return opts
    try:
        return PaginationOpts.model_validate(opts)
    except ValidationError as e:
        issues = [
            ("pagination_opts." + ".".join(str(p) for p in error["loc"]), error["msg"])
            for error in e.errors()
        ]
        raise validation_error(issues) from e


async def fetch_page(query: Query, opts: PaginationOpts) -> Page:
    """paginate() with store cursor errors reported as VALIDATION_FAILED."""
    try:
        return await query.paginate(opts)
    except MalformedCursorError as e:
        raise validation_error([("pagination_opts.cursor", "Malformed cursor")]) from e


def check_bulk(count: int, settings: Settings, label: str) -> None:
    """Raises:
        CrudError: LIMIT_EXCEEDED above settings.bulk_max
    """
    if count > settings.bulk_max:
        raise err(
            ErrorCode.LIMIT_EXCEEDED,
            label,
            message=f"At most {settings.bulk_max} items per call",
        )


async def cascade_delete(
    ctx: MutationContext,
    cascades: Sequence[Cascade],
    parent_id: str,
) -> int:
    """Hard-delete every row referencing parent_id through a cascade.

    Returns:
        Number of rows deleted
    """
    deleted = 0
    for cascade in cascades:
        child_def = ctx.db.registry.require(cascade.table)
        file_fields = detect_files(child_def)
        rows = await ctx.db.query(cascade.table).filter(
            fb.eq(fb.field(cascade.foreign_key), parent_id)
        ).collect()
        for row in rows:
            await ctx.db.delete(row["_id"])
            await clean_files(ctx.storage, row, file_fields)
            deleted += 1
    if deleted:
        logger.info(
            "crud:cascade",
            extra={"parent_id": parent_id, "deleted": deleted, "tables": [c.table for c in cascades]},
        )
    return deleted


class TableHooks:
    """Calls into a table's merged hooks, skipping the ones not set."""

    def __init__(self, hooks: CrudHooks) -> None:
        self._hooks = hooks

    async def before_create(self, hctx: HookContext, data: Dict[str, Any]) -> Dict[str, Any]:
        if self._hooks.before_create is None:
            return data
        return await self._hooks.before_create(hctx, data)

    async def after_create(self, hctx: HookContext, doc_id: str, data: Dict[str, Any]) -> None:
        if self._hooks.after_create is not None:
            await self._hooks.after_create(hctx, doc_id, data)

    async def before_update(
        self, hctx: HookContext, doc_id: str, patch: Dict[str, Any], prev: Document
    ) -> Dict[str, Any]:
        if self._hooks.before_update is None:
            return patch
        return await self._hooks.before_update(hctx, doc_id, patch, prev)

    async def after_update(
        self, hctx: HookContext, doc_id: str, patch: Dict[str, Any], prev: Document
    ) -> None:
        if self._hooks.after_update is not None:
            await self._hooks.after_update(hctx, doc_id, patch, prev)

    async def before_delete(self, hctx: HookContext, doc_id: str, doc: Document) -> None:
        if self._hooks.before_delete is not None:
            await self._hooks.before_delete(hctx, doc_id, doc)

    async def after_delete(self, hctx: HookContext, doc_id: str, doc: Document) -> None:
        if self._hooks.after_delete is not None:
            await self._hooks.after_delete(hctx, doc_id, doc)
