"""
Shared fixtures.

The engine runs on the in-memory store with a controllable clock.
Requests are plain user ids: resolve_user_id returns whatever request
it is handed, so `await blog.create(users["alice"], ...)` acts as Alice
and `await blog.pub.list(None)` is anonymous.
"""

import pytest
import pytest_asyncio

from lazycrud import InMemoryDocumentStore, InMemoryFileStorage, Settings, setup

from tests.schemas import make_registry

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


def identity_resolver(request):
    return request


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryFileStorage()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store(clock):
    return InMemoryDocumentStore(make_registry(), clock=clock)


@pytest.fixture
def engine(store, clock, storage, settings):
    return setup(
        store,
        resolve_user_id=identity_resolver,
        storage=storage,
        settings=settings,
        clock=clock,
    )


@pytest_asyncio.fixture
async def users(engine):
    """Start the engine and seed four users; maps first name to user id."""
    await engine.start()
    ids = {}
    for name in ("alice", "bob", "carol", "dave"):
        ids[name] = await engine.store.insert(
            "users", {"name": name.title(), "email": f"{name}@example.com"}
        )
    yield ids
    await engine.close()
