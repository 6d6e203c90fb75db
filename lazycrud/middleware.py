"""
Hook and middleware composition around create/update/delete.

Two layers wrap every mutation:
- Global: process-wide middleware plus the engine's global hooks,
  registered once at setup
- Local: the hooks passed to a single table factory

before_* hooks form a pipeline: each hook receives the data/patch the
previous one returned (a hook returning None keeps its input). after_*
hooks run in order for side effects only. Global runs before local.

Hook signatures (sync or async):
    before_create(ctx, data) -> data
    after_create(ctx, doc_id, data)
    before_update(ctx, doc_id, patch, prev) -> patch
    after_update(ctx, doc_id, patch, prev)
    before_delete(ctx, doc_id, doc)
    after_delete(ctx, doc_id, doc)

Invariants:
    - Hooks never have their exceptions swallowed; a before_* error
      aborts before the write, an after_* error surfaces after it
    - ctx.state is shared by every hook of one operation

How to change safely:
    - Keep the six hook names in sync with CrudHooks and _chain
    - Built-in middleware must stay pure pass-through for data they
      do not understand
"""

from __future__ import annotations

import inspect
import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence, Union

from .config import Settings
from .files import FileStorage
from .store.base import DocumentStore

logger = logging.getLogger(__name__)

HookResult = Union[Any, Awaitable[Any]]
Hook = Callable[..., HookResult]

HOOK_NAMES = (
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_delete",
    "after_delete",
)


@dataclass
class HookContext:
    """What every hook receives.

    Attributes:
        db: Raw store (writes bypass authorization; use with care)
        storage: Attachment storage, if configured
        user_id: Caller id (None for unauthenticated cache writes)
        table: Table being mutated
        operation: "create", "update" or "delete" (set for middleware)
        state: Scratch space shared across the hooks of one operation
    """

    db: DocumentStore
    storage: Optional[FileStorage]
    user_id: Optional[str]
    table: str
    operation: Optional[str] = None
    state: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CrudHooks:
    """Optional callbacks around one table's mutations."""

    before_create: Optional[Hook] = None
    after_create: Optional[Hook] = None
    before_update: Optional[Hook] = None
    after_update: Optional[Hook] = None
    before_delete: Optional[Hook] = None
    after_delete: Optional[Hook] = None

    def __bool__(self) -> bool:
        return any(getattr(self, name) is not None for name in HOOK_NAMES)


@dataclass(frozen=True)
class Middleware(CrudHooks):
    """Named, reusable hooks applied to every table."""

    name: str = "middleware"


async def resolve(value: HookResult) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _chain(layers: Sequence[CrudHooks], operation_tag: bool) -> CrudHooks:
    layers = [layer for layer in layers if layer]
    if not layers:
        return CrudHooks()

    def tagged(ctx: HookContext, operation: str) -> HookContext:
        return replace(ctx, operation=operation) if operation_tag else ctx

    async def before_create(ctx: HookContext, data: Dict[str, Any]) -> Dict[str, Any]:
        for layer in layers:
            if layer.before_create is not None:
                result = await resolve(layer.before_create(tagged(ctx, "create"), data))
                if result is not None:
                    data = result
        return data

    async def after_create(ctx: HookContext, doc_id: str, data: Dict[str, Any]) -> None:
        for layer in layers:
            if layer.after_create is not None:
                await resolve(layer.after_create(tagged(ctx, "create"), doc_id, data))

    async def before_update(
        ctx: HookContext, doc_id: str, patch: Dict[str, Any], prev: Dict[str, Any]
    ) -> Dict[str, Any]:
        for layer in layers:
            if layer.before_update is not None:
                result = await resolve(layer.before_update(tagged(ctx, "update"), doc_id, patch, prev))
                if result is not None:
                    patch = result
        return patch

    async def after_update(
        ctx: HookContext, doc_id: str, patch: Dict[str, Any], prev: Dict[str, Any]
    ) -> None:
        for layer in layers:
            if layer.after_update is not None:
                await resolve(layer.after_update(tagged(ctx, "update"), doc_id, patch, prev))

    async def before_delete(ctx: HookContext, doc_id: str, doc: Dict[str, Any]) -> None:
        for layer in layers:
            if layer.before_delete is not None:
                await resolve(layer.before_delete(tagged(ctx, "delete"), doc_id, doc))

    async def after_delete(ctx: HookContext, doc_id: str, doc: Dict[str, Any]) -> None:
        for layer in layers:
            if layer.after_delete is not None:
                await resolve(layer.after_delete(tagged(ctx, "delete"), doc_id, doc))

    return CrudHooks(
        before_create=before_create,
        after_create=after_create,
        before_update=before_update,
        after_update=after_update,
        before_delete=before_delete,
        after_delete=after_delete,
    )


def compose_middleware(*middlewares: Middleware) -> CrudHooks:
    """Combine middleware in registration order, tagging ctx.operation."""
    return _chain(middlewares, operation_tag=True)


def merge_hooks(*layers: Optional[CrudHooks]) -> CrudHooks:
    """Run layers in order (global first, then per-table)."""
    return _chain([layer for layer in layers if layer is not None], operation_tag=False)


# =============================================================================
# Built-in middleware
# =============================================================================


def audit_log(log_level: str = "info", verbose: bool = False) -> Middleware:
    """Log every create, update and delete.

    With verbose, creates include the data and updates the changed fields.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    def after_create(ctx: HookContext, doc_id: str, data: Dict[str, Any]) -> None:
        extra = {"table": ctx.table, "doc_id": doc_id, "user_id": ctx.user_id}
        if verbose:
            extra["data"] = data
        logger.log(level, "audit:create", extra=extra)

    def after_update(
        ctx: HookContext, doc_id: str, patch: Dict[str, Any], prev: Dict[str, Any]
    ) -> None:
        extra: Dict[str, Any] = {"table": ctx.table, "doc_id": doc_id, "user_id": ctx.user_id}
        if verbose:
            extra["fields"] = sorted(patch)
            extra["changes"] = {
                k: {"from": prev.get(k), "to": v} for k, v in patch.items() if prev.get(k) != v
            }
        logger.log(level, "audit:update", extra=extra)

    def after_delete(ctx: HookContext, doc_id: str, doc: Dict[str, Any]) -> None:
        logger.log(
            level,
            "audit:delete",
            extra={"table": ctx.table, "doc_id": doc_id, "user_id": ctx.user_id},
        )

    return Middleware(
        name="audit_log",
        after_create=after_create,
        after_update=after_update,
        after_delete=after_delete,
    )


_START_KEY = "_mw_start"


def slow_query_warn(
    threshold_ms: Optional[int] = None,
    clock: Callable[[], float] = time.perf_counter,
) -> Middleware:
    """Warn when a mutation takes longer than threshold_ms between its hooks.

    threshold_ms defaults to Settings.slow_query_threshold_ms.
    """
    if threshold_ms is None:
        threshold_ms = Settings().slow_query_threshold_ms

    def start(ctx: HookContext, *args: Any) -> None:
        ctx.state[_START_KEY] = clock()
        return None

    def finish(ctx: HookContext, doc_id: str, *args: Any) -> None:
        started = ctx.state.pop(_START_KEY, None)
        if started is None:
            return
        duration_ms = (clock() - started) * 1000
        if duration_ms > threshold_ms:
            logger.warning(
                f"slow:{ctx.operation}",
                extra={
                    "table": ctx.table,
                    "doc_id": doc_id,
                    "duration_ms": round(duration_ms, 1),
                    "threshold_ms": threshold_ms,
                },
            )

    return Middleware(
        name="slow_query_warn",
        before_create=start,
        after_create=finish,
        before_update=start,
        after_update=finish,
        before_delete=start,
        after_delete=finish,
    )


SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)


def sanitize_string(value: str) -> str:
    """Strip script tags and inline event-handler attributes."""
    return EVENT_HANDLER.sub("", SCRIPT_TAG.sub("", value))


def input_sanitize(fields: Optional[Iterable[str]] = None) -> Middleware:
    """Sanitize string values of the given fields (all string fields if None)."""
    selected = set(fields) if fields is not None else None

    def clean(data: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = dict(data)
        for key, value in data.items():
            if isinstance(value, str) and (selected is None or key in selected):
                cleaned[key] = sanitize_string(value)
        return cleaned

    def before_create(ctx: HookContext, data: Dict[str, Any]) -> Dict[str, Any]:
        return clean(data)

    def before_update(
        ctx: HookContext, doc_id: str, patch: Dict[str, Any], prev: Dict[str, Any]
    ) -> Dict[str, Any]:
        return clean(patch)

    return Middleware(name="input_sanitize", before_create=before_create, before_update=before_update)
