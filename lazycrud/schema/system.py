"""
System tables every engine registers.

users, org, org_member, org_invite, org_join_request and rate_limit
back authentication lookups, organization management and the rate
limiter. Applications may read them but only the engine writes them.
"""

from __future__ import annotations

from .registry import SchemaRegistry
from .types import IndexDef, TableDef, base_table, field

USERS = base_table(
    "users",
    fields=(
        field("name", "str"),
        field("email", "str"),
        field("image", "str"),
    ),
    indexes=(IndexDef("by_email", ("email",)),),
)

ORG = base_table(
    "org",
    fields=(
        field("name", "str", required=True, max_length=200),
        field("slug", "str", required=True, max_length=100),
        field("avatar_id", "file"),
        field("user_id", "ref", required=True, ref_table="users"),
        field("updated_at", "timestamp", required=True),
    ),
    indexes=(
        IndexDef("by_slug", ("slug",)),
        IndexDef("by_user", ("user_id",)),
    ),
)

ORG_MEMBER = base_table(
    "org_member",
    fields=(
        field("org_id", "ref", required=True, ref_table="org"),
        field("user_id", "ref", required=True, ref_table="users"),
        field("is_admin", "bool", required=True),
        field("updated_at", "timestamp", required=True),
    ),
    indexes=(
        IndexDef("by_org", ("org_id",)),
        IndexDef("by_org_user", ("org_id", "user_id")),
        IndexDef("by_user", ("user_id",)),
    ),
)

ORG_INVITE = base_table(
    "org_invite",
    fields=(
        field("org_id", "ref", required=True, ref_table="org"),
        field("email", "str", required=True),
        field("token", "str", required=True),
        field("is_admin", "bool", required=True),
        field("expires_at", "timestamp", required=True),
    ),
    indexes=(
        IndexDef("by_org", ("org_id",)),
        IndexDef("by_token", ("token",)),
    ),
)

ORG_JOIN_REQUEST = base_table(
    "org_join_request",
    fields=(
        field("org_id", "ref", required=True, ref_table="org"),
        field("user_id", "ref", required=True, ref_table="users"),
        field("message", "str"),
        field("status", "enum", required=True, enum_values=("pending", "approved", "rejected")),
    ),
    indexes=(
        IndexDef("by_org", ("org_id",)),
        IndexDef("by_org_status", ("org_id", "status")),
        IndexDef("by_user", ("user_id",)),
    ),
)

RATE_LIMIT = base_table(
    "rate_limit",
    fields=(
        field("table", "str", required=True),
        field("key", "str", required=True),
        field("count", "int", required=True),
        field("window_start", "timestamp", required=True),
    ),
    indexes=(IndexDef("by_table_key", ("table", "key")),),
)

SYSTEM_TABLES: tuple[TableDef, ...] = (
    USERS,
    ORG,
    ORG_MEMBER,
    ORG_INVITE,
    ORG_JOIN_REQUEST,
    RATE_LIMIT,
)


def register_system_tables(registry: SchemaRegistry) -> None:
    """Register system tables that are not registered yet."""
    for table in SYSTEM_TABLES:
        if table.name not in registry:
            registry.register(table)
