"""
Invitations by token.

An admin creates an invite for an email address; whoever presents the
token before expires_at joins the org with the invite's admin flag.
Tokens are 32 hex characters from the secrets module.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List

from ..acl import OrgRole, get_org_member, require_org_role
from ..context import MutationContext, ReadContext
from ..errors import ErrorCode, err
from ..store.base import Document

logger = logging.getLogger(__name__)

TOKEN_BYTES = 16


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


class InviteOps:
    """invite, accept_invite, revoke_invite, pending_invites."""

    def _define_invites(self, builders) -> None:
        m, q = builders.mutation, builders.query
        self.invite = m.define("org.invite", self._invite)
        self.accept_invite = m.define("org.accept_invite", self._accept_invite)
        self.revoke_invite = m.define("org.revoke_invite", self._revoke_invite)
        self.pending_invites = q.define("org.pending_invites", self._pending_invites)

    async def _invite(
        self, ctx: MutationContext, org_id: str, email: str, is_admin: bool = False
    ) -> Dict[str, Any]:
        await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, "org:invite")
        token = generate_token()
        invite_id = await ctx.db.insert(
            "org_invite",
            {
                "org_id": org_id,
                "email": email,
                "token": token,
                "is_admin": bool(is_admin),
                "expires_at": ctx.now() + ctx.settings.invite_ttl_ms,
            },
        )
        logger.info("org:invite", extra={"org_id": org_id, "invite_id": invite_id})
        return {"invite_id": invite_id, "token": token}

    async def _accept_invite(self, ctx: MutationContext, token: str) -> Dict[str, Any]:
        label = "org:accept_invite"
        invite = await ctx.db.query("org_invite").with_index("by_token", {"token": token}).unique()
        if invite is None:
            raise err(ErrorCode.INVALID_INVITE, label)
        if invite["expires_at"] < ctx.now():
            raise err(ErrorCode.INVITE_EXPIRED, label)
        org_id = invite["org_id"]
        org = await ctx.db.get(org_id, "org")
        if org is None:
            raise err(ErrorCode.NOT_FOUND, label)
        if org["user_id"] == ctx.user_id or await get_org_member(ctx.db, org_id, ctx.user_id):
            raise err(ErrorCode.ALREADY_ORG_MEMBER, label)

        pending = await self._pending_request_of(ctx, org_id, ctx.user_id)
        if pending is not None:
            await ctx.db.patch(pending["_id"], {"status": "approved"})
        await ctx.db.insert(
            "org_member",
            {
                "org_id": org_id,
                "user_id": ctx.user_id,
                "is_admin": invite["is_admin"],
                "updated_at": ctx.now(),
            },
        )
        await ctx.db.delete(invite["_id"])
        logger.info("org:accept_invite", extra={"org_id": org_id, "user_id": ctx.user_id})
        return {"org_id": org_id}

    async def _revoke_invite(self, ctx: MutationContext, invite_id: str) -> None:
        label = "org:revoke_invite"
        invite = await ctx.db.get(invite_id, "org_invite")
        if invite is None:
            raise err(ErrorCode.NOT_FOUND, label)
        await require_org_role(ctx.db, invite["org_id"], ctx.user_id, OrgRole.ADMIN, label)
        await ctx.db.delete(invite_id)

    async def _pending_invites(self, ctx: ReadContext, org_id: str) -> List[Document]:
        await require_org_role(ctx.db, org_id, ctx.viewer_id, OrgRole.ADMIN, "org:pending_invites")
        return await ctx.db.query("org_invite").with_index("by_org", {"org_id": org_id}).collect()
