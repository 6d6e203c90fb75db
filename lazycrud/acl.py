"""
Organization roles and document edit permissions.

Roles are derived, never stored: the org's user_id is its owner, and an
org_member row with is_admin set makes an admin, without it a member.

Invariants:
    - owner > admin > member, totally ordered
    - Owners and admins may edit every document in their org
    - Members edit documents they created, or where they are listed in
      editors (the document's own list, or the parent's for AclFrom tables)
    - An editors list never exceeds max_editors entries

How to change safely:
    - New roles must slot into ROLE_RANK without reordering existing ones
    - Every membership check must go through require_org_member
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional

from .errors import ErrorCode, err
from .store.base import Document, DocumentStore

logger = logging.getLogger(__name__)


class OrgRole(Enum):
    """Caller's role within an organization."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    def at_least(self, other: OrgRole) -> bool:
        return self.rank >= other.rank


ROLE_RANK = {
    OrgRole.OWNER: 3,
    OrgRole.ADMIN: 2,
    OrgRole.MEMBER: 1,
}


@dataclass(frozen=True)
class OrgAccess:
    """Result of a successful membership check."""

    org: Document
    member: Optional[Document]
    role: OrgRole


def get_org_role(
    org: Mapping[str, Any],
    member: Optional[Mapping[str, Any]],
    user_id: str,
) -> Optional[OrgRole]:
    """Resolve a user's role from the org and their membership row."""
    if org.get("user_id") == user_id:
        return OrgRole.OWNER
    if member is None:
        return None
    return OrgRole.ADMIN if member.get("is_admin") else OrgRole.MEMBER


async def get_org_member(db: DocumentStore, org_id: str, user_id: str) -> Optional[Document]:
    return await (
        db.query("org_member")
        .with_index("by_org_user", {"org_id": org_id, "user_id": user_id})
        .unique()
    )


async def require_org_member(
    db: DocumentStore,
    org_id: str,
    user_id: str,
    label: Optional[str] = None,
) -> OrgAccess:
    """Fetch the org and the caller's role.

    Raises:
        CrudError: NOT_FOUND if the org is missing, NOT_ORG_MEMBER if
            the caller holds no role
    """
    org = await db.get(org_id, "org")
    if org is None:
        raise err(ErrorCode.NOT_FOUND, label or "org:get")
    member = await get_org_member(db, org_id, user_id)
    role = get_org_role(org, member, user_id)
    if role is None:
        raise err(ErrorCode.NOT_ORG_MEMBER, label)
    return OrgAccess(org=org, member=member, role=role)


async def require_org_role(
    db: DocumentStore,
    org_id: str,
    user_id: str,
    min_role: OrgRole,
    label: Optional[str] = None,
) -> OrgAccess:
    """Membership check plus a minimum role.

    Raises:
        CrudError: INSUFFICIENT_ORG_ROLE when the role ranks below min_role
    """
    access = await require_org_member(db, org_id, user_id, label)
    if not access.role.at_least(min_role):
        raise err(ErrorCode.INSUFFICIENT_ORG_ROLE, label)
    return access


def can_edit(
    role: OrgRole,
    doc: Mapping[str, Any],
    user_id: str,
    acl: bool = False,
    parent: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Whether a caller with role may mutate doc.

    Args:
        role: Caller's org role
        doc: Target document
        user_id: Caller id
        acl: Whether the table honors an editors list
        parent: Parent document whose editors apply (AclFrom tables)
    """
    if role in (OrgRole.OWNER, OrgRole.ADMIN):
        return True
    if doc.get("user_id") == user_id:
        return True
    if not acl:
        return False
    source = parent if parent is not None else doc
    return user_id in (source.get("editors") or [])


async def assert_can_be_editor(
    db: DocumentStore,
    org: Mapping[str, Any],
    user_id: str,
    label: str,
) -> None:
    """Editors must belong to the org.

    Raises:
        CrudError: NOT_ORG_MEMBER
    """
    if org.get("user_id") == user_id:
        return
    if await get_org_member(db, org["_id"], user_id) is None:
        raise err(ErrorCode.NOT_ORG_MEMBER, label)


def check_editor_limit(editors: Iterable[str], max_editors: int, label: str) -> List[str]:
    """Deduplicate editors preserving order.

    Raises:
        CrudError: LIMIT_EXCEEDED above max_editors
    """
    unique = list(dict.fromkeys(editors))
    if len(unique) > max_editors:
        raise err(
            ErrorCode.LIMIT_EXCEEDED,
            label,
            message=f"At most {max_editors} editors allowed",
        )
    return unique
