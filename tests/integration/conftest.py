"""
Organization fixtures.

acme is owned by alice, with bob as a member and carol as an admin;
dave belongs to no org.
"""

import pytest
import pytest_asyncio


@pytest.fixture
def org_api(engine):
    return engine.org(cascade_tables=["wiki"])


@pytest_asyncio.fixture
async def acme(org_api, users):
    created = await org_api.create(users["alice"], name="Acme", slug="acme")
    org_id = created["org_id"]
    for name, is_admin in (("bob", False), ("carol", True)):
        invite = await org_api.invite(
            users["alice"], org_id=org_id, email=f"{name}@example.com", is_admin=is_admin
        )
        await org_api.accept_invite(users[name], token=invite["token"])
    return org_id
