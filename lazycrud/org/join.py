"""
Join requests: users ask, admins approve or reject.

Invariants:
    - At most one pending request per (org, user)
    - Only pending requests can be approved, rejected or cancelled
    - Approval creates the membership in the same transaction
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..acl import OrgRole, get_org_member, require_org_role
from ..context import MutationContext, ReadContext
from ..errors import ErrorCode, err
from ..store.base import Document
from ..store.expr import FilterBuilder

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

fb = FilterBuilder()


class JoinOps:
    """request_join, approve/reject/cancel_join_request, pending_join_requests, my_join_request."""

    def _define_join(self, builders) -> None:
        m, q = builders.mutation, builders.query
        self.request_join = m.define("org.request_join", self._request_join)
        self.approve_join_request = m.define("org.approve_join_request", self._approve)
        self.reject_join_request = m.define("org.reject_join_request", self._reject)
        self.cancel_join_request = m.define("org.cancel_join_request", self._cancel)
        self.pending_join_requests = q.define("org.pending_join_requests", self._pending_join_requests)
        self.my_join_request = q.define("org.my_join_request", self._my_join_request)

    async def _pending_request_of(
        self, ctx: ReadContext, org_id: str, user_id: str
    ) -> Optional[Document]:
        return await (
            ctx.db.query("org_join_request")
            .with_index("by_org_status", {"org_id": org_id, "status": PENDING})
            .filter(fb.eq(fb.field("user_id"), user_id))
            .first()
        )

    async def _pending_request(self, ctx: MutationContext, request_id: str, label: str) -> Document:
        request = await ctx.db.get(request_id, "org_join_request")
        if request is None or request.get("status") != PENDING:
            raise err(ErrorCode.NOT_FOUND, label)
        return request

    async def _request_join(
        self, ctx: MutationContext, org_id: str, message: Optional[str] = None
    ) -> Dict[str, Any]:
        label = "org:request_join"
        org = await ctx.db.get(org_id, "org")
        if org is None:
            raise err(ErrorCode.NOT_FOUND, label)
        if org["user_id"] == ctx.user_id or await get_org_member(ctx.db, org_id, ctx.user_id):
            raise err(ErrorCode.ALREADY_ORG_MEMBER, label)
        if await self._pending_request_of(ctx, org_id, ctx.user_id) is not None:
            raise err(ErrorCode.JOIN_REQUEST_EXISTS, label)
        request = {"org_id": org_id, "user_id": ctx.user_id, "status": PENDING}
        if message is not None:
            request["message"] = message
        request_id = await ctx.db.insert("org_join_request", request)
        logger.info("org:request_join", extra={"org_id": org_id, "request_id": request_id})
        return {"request_id": request_id}

    async def _approve(self, ctx: MutationContext, request_id: str, is_admin: bool = False) -> None:
        label = "org:approve_join_request"
        request = await self._pending_request(ctx, request_id, label)
        org_id = request["org_id"]
        await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        if await get_org_member(ctx.db, org_id, request["user_id"]) is None:
            await ctx.db.insert(
                "org_member",
                {
                    "org_id": org_id,
                    "user_id": request["user_id"],
                    "is_admin": bool(is_admin),
                    "updated_at": ctx.now(),
                },
            )
        await ctx.db.patch(request_id, {"status": APPROVED})
        logger.info("org:approve_join_request", extra={"org_id": org_id, "request_id": request_id})

    async def _reject(self, ctx: MutationContext, request_id: str) -> None:
        label = "org:reject_join_request"
        request = await self._pending_request(ctx, request_id, label)
        await require_org_role(ctx.db, request["org_id"], ctx.user_id, OrgRole.ADMIN, label)
        await ctx.db.patch(request_id, {"status": REJECTED})

    async def _cancel(self, ctx: MutationContext, request_id: str) -> None:
        label = "org:cancel_join_request"
        request = await ctx.db.get(request_id, "org_join_request")
        if request is None:
            raise err(ErrorCode.NOT_FOUND, label)
        if request["user_id"] != ctx.user_id:
            raise err(ErrorCode.FORBIDDEN, label)
        if request.get("status") != PENDING:
            raise err(ErrorCode.NOT_FOUND, label)
        await ctx.db.delete(request_id)

    async def _pending_join_requests(self, ctx: ReadContext, org_id: str) -> List[Dict[str, Any]]:
        await require_org_role(
            ctx.db, org_id, ctx.viewer_id, OrgRole.ADMIN, "org:pending_join_requests"
        )
        requests = await (
            ctx.db.query("org_join_request")
            .with_index("by_org_status", {"org_id": org_id, "status": PENDING})
            .collect()
        )
        return [
            {"request": request, "user": await ctx.db.get(request["user_id"], "users")}
            for request in requests
        ]

    async def _my_join_request(self, ctx: ReadContext, org_id: str) -> Optional[Document]:
        return await self._pending_request_of(ctx, org_id, ctx.viewer_id)
