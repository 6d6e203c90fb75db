"""
Organization lifecycle: create, update, lookup, removal.

OrgApi bundles these with the member, invite and join-request
operations; every operation is registered under "org.<name>".

Invariants:
    - Slugs are unique across orgs (ORG_SLUG_TAKEN)
    - The creator becomes the owner through org.user_id
    - remove() deletes dependents before the org: cascade tables, join
      requests, invites, members, then the avatar file
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from ..acl import OrgRole, require_org_member, require_org_role
from ..builders import Builders
from ..context import MutationContext, ReadContext
from ..errors import ErrorCode, err, validation_error
from ..files import FileField, clean_files, detect_files
from ..schema.system import ORG
from ..store.base import Document
from .invites import InviteOps
from .join import JoinOps
from .members import MemberOps, load_org

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "slug", "avatar_id")
AVATAR = [FileField("avatar_id", multiple=False)]


def _check_fields(values: Dict[str, Any]) -> None:
    issues = []
    for name, value in values.items():
        if name not in EDITABLE_FIELDS:
            issues.append((name, f"Unknown field '{name}'"))
            continue
        ok, message = ORG.get_field(name).validate_value(value)
        if not ok:
            issues.append((name, message))
    if issues:
        raise validation_error(issues)


class OrgApi(MemberOps, InviteOps, JoinOps):
    """Organization management operations.

    Example:
        >>> org = engine.org(cascade_tables=["wiki", "project"])
        >>> created = await org.create(request, name="Acme", slug="acme")
        >>> await org.invite(request, org_id=created["org_id"], email="a@b.c")
    """

    def __init__(self, builders: Builders, cascade_tables: Sequence[str] = ()) -> None:
        self.cascade_tables = tuple(cascade_tables)
        m, q, pq = builders.mutation, builders.query, builders.public_query
        self.create = m.define("org.create", self._create)
        self.update = m.define("org.update", self._update)
        self.get = q.define("org.get", self._get)
        self.get_by_slug = pq.define("org.get_by_slug", self._get_by_slug)
        self.get_public = pq.define("org.get_public", self._get_public)
        self.my_orgs = q.define("org.my_orgs", self._my_orgs)
        self.remove = m.define("org.remove", self._remove)
        self.is_slug_available = pq.define("org.is_slug_available", self._is_slug_available)
        self._define_members(builders)
        self._define_invites(builders)
        self._define_join(builders)

    async def _by_slug(self, ctx: ReadContext, slug: str) -> Optional[Document]:
        return await ctx.db.query("org").with_index("by_slug", {"slug": slug}).unique()

    async def _create(
        self, ctx: MutationContext, name: str, slug: str, avatar_id: Optional[str] = None
    ) -> Dict[str, Any]:
        values = {"name": name, "slug": slug}
        if avatar_id is not None:
            values["avatar_id"] = avatar_id
        _check_fields(values)
        if await self._by_slug(ctx, slug) is not None:
            raise err(ErrorCode.ORG_SLUG_TAKEN, "org:create")
        org_id = await ctx.create("org", values)
        logger.info("org:create", extra={"org_id": org_id, "slug": slug, "user_id": ctx.user_id})
        return {"org_id": org_id}

    async def _update(self, ctx: MutationContext, org_id: str, **patch: Any) -> Document:
        label = "org:update"
        _check_fields({k: v for k, v in patch.items() if k != "avatar_id" or v is not None})
        access = await require_org_role(ctx.db, org_id, ctx.user_id, OrgRole.ADMIN, label)
        slug = patch.get("slug")
        if slug is not None:
            existing = await self._by_slug(ctx, slug)
            if existing is not None and existing["_id"] != org_id:
                raise err(ErrorCode.ORG_SLUG_TAKEN, label)
        doc = await ctx.patch_doc(access.org, patch, label=label)
        await clean_files(ctx.storage, access.org, AVATAR, patch)
        logger.info("org:update", extra={"org_id": org_id, "fields": sorted(patch)})
        return doc

    async def _get(self, ctx: ReadContext, org_id: str) -> Document:
        access = await require_org_member(ctx.db, org_id, ctx.viewer_id, "org:get")
        return access.org

    async def _get_by_slug(self, ctx: ReadContext, slug: str) -> Optional[Document]:
        return await self._by_slug(ctx, slug)

    async def _get_public(self, ctx: ReadContext, slug: str) -> Optional[Dict[str, Any]]:
        org = await self._by_slug(ctx, slug)
        if org is None:
            return None
        avatar_url = None
        if org.get("avatar_id") and ctx.storage is not None:
            avatar_url = await ctx.storage.get_url(org["avatar_id"])
        return {"_id": org["_id"], "name": org["name"], "slug": org["slug"], "avatar_url": avatar_url}

    async def _my_orgs(self, ctx: ReadContext) -> List[Dict[str, Any]]:
        uid = ctx.viewer_id
        owned = await ctx.db.query("org").with_index("by_user", {"user_id": uid}).collect()
        result = [{"org": org, "role": OrgRole.OWNER.value} for org in owned]
        owned_ids = {org["_id"] for org in owned}
        memberships = await ctx.db.query("org_member").with_index("by_user", {"user_id": uid}).collect()
        for member in memberships:
            if member["org_id"] in owned_ids:
                continue
            org = await ctx.db.get(member["org_id"], "org")
            if org is None:
                continue
            role = OrgRole.ADMIN if member.get("is_admin") else OrgRole.MEMBER
            result.append({"org": org, "role": role.value})
        return result

    async def _remove(self, ctx: MutationContext, org_id: str) -> None:
        label = "org:remove"
        org = await load_org(ctx, org_id, label)
        if org["user_id"] != ctx.user_id:
            raise err(ErrorCode.FORBIDDEN, label)
        for table in self.cascade_tables:
            file_fields = detect_files(ctx.db.registry.require(table))
            rows = await ctx.db.query(table).with_index("by_org", {"org_id": org_id}).collect()
            for row in rows:
                await clean_files(ctx.storage, row, file_fields)
                await ctx.db.delete(row["_id"])
        for table in ("org_join_request", "org_invite", "org_member"):
            for row in await ctx.db.query(table).with_index("by_org", {"org_id": org_id}).collect():
                await ctx.db.delete(row["_id"])
        await clean_files(ctx.storage, org, AVATAR)
        await ctx.db.delete(org_id)
        logger.info("org:remove", extra={"org_id": org_id, "cascade_tables": list(self.cascade_tables)})

    async def _is_slug_available(self, ctx: ReadContext, slug: str) -> Dict[str, bool]:
        return {"available": await self._by_slug(ctx, slug) is None}
