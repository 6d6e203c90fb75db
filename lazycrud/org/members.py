"""
Membership operations: roles, admin flags, leaving and ownership transfer.

Invariants:
    - The owner has no org_member row; ownership lives on org.user_id
    - Nobody can demote or remove the owner (CANNOT_MODIFY_OWNER)
    - Admins cannot remove other admins; only the owner can
    - Transferring ownership turns the old owner into an admin member
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..acl import OrgRole, get_org_member, get_org_role, require_org_member, require_org_role
from ..context import MutationContext, ReadContext
from ..errors import ErrorCode, err
from ..store.base import Document

logger = logging.getLogger(__name__)


async def load_org(ctx: ReadContext, org_id: str, label: Optional[str] = None) -> Document:
    org = await ctx.db.get(org_id, "org")
    if org is None:
        raise err(ErrorCode.NOT_FOUND, label or "org:get")
    return org


class MemberOps:
    """membership, members, set_admin, remove_member, leave, transfer_ownership."""

    def _define_members(self, builders) -> None:
        m, q = builders.mutation, builders.query
        self.membership = q.define("org.membership", self._membership)
        self.members = q.define("org.members", self._members)
        self.set_admin = m.define("org.set_admin", self._set_admin)
        self.remove_member = m.define("org.remove_member", self._remove_member)
        self.leave = m.define("org.leave", self._leave)
        self.transfer_ownership = m.define("org.transfer_ownership", self._transfer_ownership)

    async def _membership(self, ctx: ReadContext, org_id: str) -> Optional[Dict[str, Any]]:
        org = await load_org(ctx, org_id, "org:membership")
        member = await get_org_member(ctx.db, org_id, ctx.viewer_id)
        role = get_org_role(org, member, ctx.viewer_id)
        if role is None:
            return None
        return {"member_id": member["_id"] if member else None, "role": role.value}

    async def _members(self, ctx: ReadContext, org_id: str) -> List[Dict[str, Any]]:
        access = await require_org_member(ctx.db, org_id, ctx.viewer_id, "org:members")
        owner_id = access.org["user_id"]
        result = [
            {
                "member_id": None,
                "role": OrgRole.OWNER.value,
                "user": await ctx.db.get(owner_id, "users"),
                "user_id": owner_id,
            }
        ]
        rows = await ctx.db.query("org_member").with_index("by_org", {"org_id": org_id}).collect()
        for row in rows:
            result.append(
                {
                    "member_id": row["_id"],
                    "role": (OrgRole.ADMIN if row.get("is_admin") else OrgRole.MEMBER).value,
                    "user": await ctx.db.get(row["user_id"], "users"),
                    "user_id": row["user_id"],
                }
            )
        return result

    async def _set_admin(self, ctx: MutationContext, member_id: str, is_admin: bool) -> None:
        label = "org:set_admin"
        member = await ctx.db.get(member_id, "org_member")
        if member is None:
            raise err(ErrorCode.NOT_FOUND, label)
        org = await load_org(ctx, member["org_id"], label)
        if org["user_id"] != ctx.user_id:
            raise err(ErrorCode.FORBIDDEN, label)
        if member["user_id"] == org["user_id"]:
            raise err(ErrorCode.CANNOT_MODIFY_OWNER, label)
        await ctx.patch_doc(member, {"is_admin": bool(is_admin)})
        logger.info(
            "org:set_admin",
            extra={"org_id": org["_id"], "member_id": member_id, "is_admin": bool(is_admin)},
        )

    async def _remove_member(self, ctx: MutationContext, member_id: str) -> None:
        label = "org:remove_member"
        member = await ctx.db.get(member_id, "org_member")
        if member is None:
            raise err(ErrorCode.NOT_FOUND, label)
        org = await load_org(ctx, member["org_id"], label)
        if member["user_id"] == org["user_id"]:
            raise err(ErrorCode.CANNOT_MODIFY_OWNER, label)
        access = await require_org_role(ctx.db, org["_id"], ctx.user_id, OrgRole.ADMIN, label)
        if access.role == OrgRole.ADMIN and member.get("is_admin"):
            raise err(ErrorCode.CANNOT_MODIFY_ADMIN, label)
        await ctx.db.delete(member_id)
        logger.info("org:remove_member", extra={"org_id": org["_id"], "member_id": member_id})

    async def _leave(self, ctx: MutationContext, org_id: str) -> None:
        label = "org:leave"
        org = await load_org(ctx, org_id, label)
        if org["user_id"] == ctx.user_id:
            raise err(ErrorCode.MUST_TRANSFER_OWNERSHIP, label)
        member = await get_org_member(ctx.db, org_id, ctx.user_id)
        if member is None:
            raise err(ErrorCode.NOT_ORG_MEMBER, label)
        await ctx.db.delete(member["_id"])
        logger.info("org:leave", extra={"org_id": org_id, "user_id": ctx.user_id})

    async def _transfer_ownership(self, ctx: MutationContext, org_id: str, new_owner_id: str) -> None:
        label = "org:transfer_ownership"
        org = await load_org(ctx, org_id, label)
        if org["user_id"] != ctx.user_id:
            raise err(ErrorCode.FORBIDDEN, label)
        target = await get_org_member(ctx.db, org_id, new_owner_id)
        if target is None:
            raise err(ErrorCode.NOT_ORG_MEMBER, label)
        if not target.get("is_admin"):
            raise err(ErrorCode.TARGET_MUST_BE_ADMIN, label)
        await ctx.patch_doc(org, {"user_id": new_owner_id})
        await ctx.db.delete(target["_id"])
        await ctx.db.insert(
            "org_member",
            {"org_id": org_id, "user_id": ctx.user_id, "is_admin": True, "updated_at": ctx.now()},
        )
        logger.info(
            "org:transfer_ownership",
            extra={"org_id": org_id, "from_user": ctx.user_id, "to_user": new_owner_id},
        )
