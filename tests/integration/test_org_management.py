"""
Integration tests for organization management.

Tests cover:
- Org create/update/lookup and slug uniqueness
- Membership listing, roles and admin flags
- Invites (accept, expiry, revoke)
- Join requests (request, approve, reject, cancel)
- Leaving, ownership transfer and org removal
"""

import pytest

from lazycrud import CrudError, ErrorCode


async def code_of(awaitable):
    with pytest.raises(CrudError) as exc_info:
        await awaitable
    return exc_info.value.code


class TestOrgs:
    """Tests for org lifecycle."""

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, org_api, users, acme):
        """The creator owns the org; it is findable by slug."""
        org = await org_api.get(users["bob"], org_id=acme)
        assert org["user_id"] == users["alice"]
        assert (await org_api.get_by_slug(None, slug="acme"))["_id"] == acme
        public = await org_api.get_public(None, slug="acme")
        assert public == {"_id": acme, "name": "Acme", "slug": "acme", "avatar_url": None}
        assert await org_api.get_public(None, slug="nope") is None

    @pytest.mark.asyncio
    async def test_slug_uniqueness(self, org_api, users, acme):
        """Slugs are unique across orgs."""
        assert await code_of(
            org_api.create(users["dave"], name="Copy", slug="acme")
        ) == ErrorCode.ORG_SLUG_TAKEN
        assert await org_api.is_slug_available(None, slug="acme") == {"available": False}
        assert await org_api.is_slug_available(None, slug="fresh") == {"available": True}

    @pytest.mark.asyncio
    async def test_update(self, org_api, users, acme):
        """Admins update; members cannot; slugs stay unique."""
        doc = await org_api.update(users["carol"], org_id=acme, name="Acme Inc")
        assert doc["name"] == "Acme Inc"
        assert await code_of(
            org_api.update(users["bob"], org_id=acme, name="Bob Inc")
        ) == ErrorCode.INSUFFICIENT_ORG_ROLE
        await org_api.create(users["dave"], name="Other", slug="other")
        assert await code_of(
            org_api.update(users["alice"], org_id=acme, slug="other")
        ) == ErrorCode.ORG_SLUG_TAKEN
        await org_api.update(users["alice"], org_id=acme, slug="acme")

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, org_api, users, acme):
        """Only name, slug and avatar_id are editable."""
        with pytest.raises(CrudError) as exc_info:
            await org_api.update(users["alice"], org_id=acme, user_id=users["bob"])
        assert exc_info.value.code == ErrorCode.VALIDATION_FAILED
        assert exc_info.value.fields == ["user_id"]

    @pytest.mark.asyncio
    async def test_avatar_replacement(self, org_api, users, acme, storage):
        """A replaced avatar is deleted from storage."""
        old = await storage.store(b"old")
        new = await storage.store(b"new")
        await org_api.update(users["alice"], org_id=acme, avatar_id=old)
        public = await org_api.get_public(None, slug="acme")
        assert public["avatar_url"] == f"memory://{old}"
        await org_api.update(users["alice"], org_id=acme, avatar_id=new)
        assert old not in storage.files

    @pytest.mark.asyncio
    async def test_my_orgs(self, org_api, users, acme):
        """my_orgs lists owned and joined orgs with roles."""
        other = (await org_api.create(users["carol"], name="Carol Co", slug="carol-co"))["org_id"]
        mine = await org_api.my_orgs(users["carol"])
        roles = {entry["org"]["_id"]: entry["role"] for entry in mine}
        assert roles == {other: "owner", acme: "admin"}
        assert await org_api.my_orgs(users["dave"]) == []


class TestMembers:
    """Tests for membership operations."""

    @pytest.mark.asyncio
    async def test_members_and_membership(self, org_api, users, acme):
        """members lists the owner first; membership reports the caller's role."""
        members = await org_api.members(users["bob"], org_id=acme)
        assert [(m["user_id"], m["role"]) for m in members] == [
            (users["alice"], "owner"),
            (users["bob"], "member"),
            (users["carol"], "admin"),
        ]
        assert members[0]["member_id"] is None
        assert members[1]["user"]["email"] == "bob@example.com"
        assert (await org_api.membership(users["alice"], org_id=acme))["role"] == "owner"
        assert (await org_api.membership(users["bob"], org_id=acme))["role"] == "member"
        assert await org_api.membership(users["dave"], org_id=acme) is None

    @pytest.mark.asyncio
    async def test_set_admin_owner_only(self, org_api, users, acme):
        """Only the owner changes admin flags."""
        bob = await org_api.membership(users["bob"], org_id=acme)
        assert await code_of(
            org_api.set_admin(users["carol"], member_id=bob["member_id"], is_admin=True)
        ) == ErrorCode.FORBIDDEN
        await org_api.set_admin(users["alice"], member_id=bob["member_id"], is_admin=True)
        assert (await org_api.membership(users["bob"], org_id=acme))["role"] == "admin"

    @pytest.mark.asyncio
    async def test_remove_member_rules(self, org_api, users, acme):
        """Admins remove members but not other admins; the owner removes anyone."""
        bob = await org_api.membership(users["bob"], org_id=acme)
        carol = await org_api.membership(users["carol"], org_id=acme)
        assert await code_of(
            org_api.remove_member(users["bob"], member_id=carol["member_id"])
        ) == ErrorCode.INSUFFICIENT_ORG_ROLE
        await org_api.set_admin(users["alice"], member_id=bob["member_id"], is_admin=True)
        assert await code_of(
            org_api.remove_member(users["bob"], member_id=carol["member_id"])
        ) == ErrorCode.CANNOT_MODIFY_ADMIN
        await org_api.remove_member(users["alice"], member_id=carol["member_id"])
        assert await org_api.membership(users["carol"], org_id=acme) is None

    @pytest.mark.asyncio
    async def test_leave(self, org_api, users, acme):
        """Members can leave; the owner must transfer first."""
        await org_api.leave(users["bob"], org_id=acme)
        assert await org_api.membership(users["bob"], org_id=acme) is None
        assert await code_of(org_api.leave(users["bob"], org_id=acme)) == ErrorCode.NOT_ORG_MEMBER
        assert await code_of(
            org_api.leave(users["alice"], org_id=acme)
        ) == ErrorCode.MUST_TRANSFER_OWNERSHIP

    @pytest.mark.asyncio
    async def test_transfer_ownership(self, org_api, users, acme):
        """Ownership goes to an admin; the old owner becomes an admin."""
        assert await code_of(
            org_api.transfer_ownership(users["alice"], org_id=acme, new_owner_id=users["bob"])
        ) == ErrorCode.TARGET_MUST_BE_ADMIN
        await org_api.transfer_ownership(users["alice"], org_id=acme, new_owner_id=users["carol"])
        assert (await org_api.membership(users["carol"], org_id=acme))["role"] == "owner"
        assert (await org_api.membership(users["alice"], org_id=acme))["role"] == "admin"
        assert await code_of(
            org_api.transfer_ownership(users["alice"], org_id=acme, new_owner_id=users["bob"])
        ) == ErrorCode.FORBIDDEN


class TestInvites:
    """Tests for invites."""

    @pytest.mark.asyncio
    async def test_accept(self, org_api, users, acme):
        """Accepting an invite joins with the invite's admin flag."""
        invite = await org_api.invite(users["carol"], org_id=acme, email="dave@example.com")
        assert len(invite["token"]) == 32
        pending = await org_api.pending_invites(users["alice"], org_id=acme)
        assert [i["_id"] for i in pending] == [invite["invite_id"]]
        assert await org_api.accept_invite(users["dave"], token=invite["token"]) == {"org_id": acme}
        assert (await org_api.membership(users["dave"], org_id=acme))["role"] == "member"
        assert await org_api.pending_invites(users["alice"], org_id=acme) == []

    @pytest.mark.asyncio
    async def test_invalid_and_expired(self, org_api, users, acme, clock, settings):
        """Unknown tokens are INVALID_INVITE; old ones INVITE_EXPIRED."""
        assert await code_of(
            org_api.accept_invite(users["dave"], token="0" * 32)
        ) == ErrorCode.INVALID_INVITE
        invite = await org_api.invite(users["alice"], org_id=acme, email="dave@example.com")
        clock.advance(settings.invite_ttl_ms + 1)
        assert await code_of(
            org_api.accept_invite(users["dave"], token=invite["token"])
        ) == ErrorCode.INVITE_EXPIRED

    @pytest.mark.asyncio
    async def test_existing_member(self, org_api, users, acme):
        """Members cannot accept another invite."""
        invite = await org_api.invite(users["alice"], org_id=acme, email="bob@example.com")
        assert await code_of(
            org_api.accept_invite(users["bob"], token=invite["token"])
        ) == ErrorCode.ALREADY_ORG_MEMBER

    @pytest.mark.asyncio
    async def test_invite_needs_admin(self, org_api, users, acme):
        """Members cannot invite or revoke."""
        assert await code_of(
            org_api.invite(users["bob"], org_id=acme, email="x@example.com")
        ) == ErrorCode.INSUFFICIENT_ORG_ROLE
        invite = await org_api.invite(users["alice"], org_id=acme, email="x@example.com")
        assert await code_of(
            org_api.revoke_invite(users["bob"], invite_id=invite["invite_id"])
        ) == ErrorCode.INSUFFICIENT_ORG_ROLE
        await org_api.revoke_invite(users["carol"], invite_id=invite["invite_id"])
        assert await code_of(
            org_api.accept_invite(users["dave"], token=invite["token"])
        ) == ErrorCode.INVALID_INVITE

    @pytest.mark.asyncio
    async def test_accept_approves_pending_request(self, org_api, users, acme):
        """Accepting an invite settles the user's pending join request."""
        request = await org_api.request_join(users["dave"], org_id=acme, message="hi")
        invite = await org_api.invite(users["alice"], org_id=acme, email="dave@example.com")
        await org_api.accept_invite(users["dave"], token=invite["token"])
        assert await org_api.my_join_request(users["dave"], org_id=acme) is None
        stored = await org_api.pending_join_requests(users["alice"], org_id=acme)
        assert stored == []
        assert request["request_id"]


class TestJoinRequests:
    """Tests for join requests."""

    @pytest.mark.asyncio
    async def test_request_and_approve(self, org_api, users, acme):
        """Admins approve pending requests into memberships."""
        request = await org_api.request_join(users["dave"], org_id=acme, message="let me in")
        mine = await org_api.my_join_request(users["dave"], org_id=acme)
        assert mine["message"] == "let me in"
        pending = await org_api.pending_join_requests(users["carol"], org_id=acme)
        assert [p["user"]["name"] for p in pending] == ["Dave"]
        await org_api.approve_join_request(users["carol"], request_id=request["request_id"], is_admin=True)
        assert (await org_api.membership(users["dave"], org_id=acme))["role"] == "admin"
        assert await code_of(
            org_api.approve_join_request(users["carol"], request_id=request["request_id"])
        ) == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_duplicate_and_member_requests(self, org_api, users, acme):
        """One pending request per user; members cannot request."""
        await org_api.request_join(users["dave"], org_id=acme)
        assert await code_of(
            org_api.request_join(users["dave"], org_id=acme)
        ) == ErrorCode.JOIN_REQUEST_EXISTS
        assert await code_of(
            org_api.request_join(users["bob"], org_id=acme)
        ) == ErrorCode.ALREADY_ORG_MEMBER

    @pytest.mark.asyncio
    async def test_reject_and_cancel(self, org_api, users, acme):
        """Rejected requests leave no membership; users cancel their own."""
        request = await org_api.request_join(users["dave"], org_id=acme)
        await org_api.reject_join_request(users["alice"], request_id=request["request_id"])
        assert await org_api.membership(users["dave"], org_id=acme) is None
        assert await org_api.my_join_request(users["dave"], org_id=acme) is None

        again = await org_api.request_join(users["dave"], org_id=acme)
        assert await code_of(
            org_api.cancel_join_request(users["bob"], request_id=again["request_id"])
        ) == ErrorCode.FORBIDDEN
        await org_api.cancel_join_request(users["dave"], request_id=again["request_id"])
        assert await org_api.my_join_request(users["dave"], org_id=acme) is None


class TestRemoveOrg:
    """Tests for org.remove."""

    @pytest.mark.asyncio
    async def test_owner_removes_everything(self, engine, org_api, users, acme):
        """Removal deletes cascade tables, invites, requests and members."""
        wiki = engine.org_crud("wiki")
        await wiki.create(users["bob"], org_id=acme, title="Doomed")
        await org_api.invite(users["alice"], org_id=acme, email="x@example.com")
        await org_api.request_join(users["dave"], org_id=acme)

        assert await code_of(org_api.remove(users["carol"], org_id=acme)) == ErrorCode.FORBIDDEN
        await org_api.remove(users["alice"], org_id=acme)

        for table in ("org", "org_member", "org_invite", "org_join_request", "wiki"):
            assert engine.store.count(table) == 0, table
        assert await code_of(org_api.get(users["alice"], org_id=acme)) == ErrorCode.NOT_FOUND
