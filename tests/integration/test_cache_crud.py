"""
Integration tests for cache-table operations.

Tests cover:
- Upsert by key and TTL-based expiry
- stale_while_revalidate reads
- load/refresh through the fetcher, on_fetch transforms
- invalidate and purge
"""

import pytest

from lazycrud import CrudError, ErrorCode, RateLimit

TTL = 1000


class FakeTmdb:
    """Fetcher that counts calls."""

    def __init__(self):
        self.calls = []

    async def __call__(self, key):
        self.calls.append(key)
        return {"title": f"Movie {key} v{len(self.calls)}"}


@pytest.fixture
def tmdb():
    return FakeTmdb()


class TestCacheEntries:
    """Tests for create/get/list and expiry."""

    @pytest.mark.asyncio
    async def test_create_upserts_by_key(self, engine, users):
        """Creating an existing key updates that entry."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        first = await movies.create(None, tmdb_id=603, title="The Matrix")
        second = await movies.create(None, tmdb_id=603, title="The Matrix (1999)")
        assert first == second
        assert engine.store.count("movie") == 1
        assert (await movies.get(None, key=603))["title"] == "The Matrix (1999)"

    @pytest.mark.asyncio
    async def test_get_hides_expired(self, engine, users, clock):
        """Entries expire ttl_ms after their last write."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        await movies.create(None, tmdb_id=603, title="The Matrix")
        hit = await movies.get(None, key=603)
        assert hit["cache_hit"] is True
        assert hit["stale"] is False
        clock.advance(TTL)
        assert await movies.get(None, key=603) is None
        assert await movies.get(None, key=999) is None

    @pytest.mark.asyncio
    async def test_stale_while_revalidate(self, engine, users, clock):
        """Expired entries come back flagged stale."""
        movies = engine.cache_crud("movie", ttl_ms=TTL, stale_while_revalidate=True)
        await movies.create(None, tmdb_id=603, title="The Matrix")
        clock.advance(TTL + 1)
        stale = await movies.get(None, key=603)
        assert stale["stale"] is True
        assert stale["title"] == "The Matrix"

    @pytest.mark.asyncio
    async def test_all_and_list_filter_expired(self, engine, users, clock):
        """all/list skip expired entries unless asked."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        await movies.create(None, tmdb_id=1, title="Old")
        clock.advance(TTL)
        await movies.create(None, tmdb_id=2, title="New")
        assert [m["title"] for m in await movies.all(None)] == ["New"]
        assert len(await movies.all(None, include_expired=True)) == 2
        page = await movies.list(None)
        assert [m["title"] for m in page["page"]] == ["New"]
        page = await movies.list(None, include_expired=True)
        assert [m["title"] for m in page["page"]] == ["New", "Old"]

    @pytest.mark.asyncio
    async def test_list_pages_skip_expired(self, engine, users, clock):
        """Expired entries never take up page slots."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        for key in (1, 2, 3, 4):
            await movies.create(None, tmdb_id=key, title=f"Movie {key}")
        clock.advance(TTL // 2)
        for key in (1, 2):
            await movies.create(None, tmdb_id=key, title=f"Movie {key}")
        clock.advance(TTL // 2 + 100)

        page = await movies.list(None, pagination_opts={"num_items": 2})
        assert [m["tmdb_id"] for m in page["page"]] == [2, 1]
        assert page["is_done"]
        page = await movies.list(None, pagination_opts={"num_items": 2}, include_expired=True)
        assert [m["tmdb_id"] for m in page["page"]] == [4, 3]

    @pytest.mark.asyncio
    async def test_update_rm_read(self, engine, users):
        """Entries can be updated, read by id and removed."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        doc_id = await movies.create(None, tmdb_id=603, title="The Matrix")
        doc = await movies.update(None, id=doc_id, overview="A hacker learns the truth")
        assert doc["overview"] == "A hacker learns the truth"
        assert (await movies.read(None, id=doc_id))["title"] == "The Matrix"
        assert (await movies.rm(None, id=doc_id))["_id"] == doc_id
        assert await movies.rm(None, id=doc_id) is None
        with pytest.raises(CrudError) as exc_info:
            await movies.update(None, id=doc_id, title="gone")
        assert exc_info.value.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalidate_and_purge(self, engine, users, clock):
        """invalidate drops one key, purge drops every expired entry."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        await movies.create(None, tmdb_id=1, title="One")
        await movies.create(None, tmdb_id=2, title="Two")
        assert (await movies.invalidate(None, key=1))["tmdb_id"] == 1
        assert await movies.invalidate(None, key=1) is None
        clock.advance(TTL)
        await movies.create(None, tmdb_id=3, title="Three")
        assert await movies.purge(None) == 1
        assert [m["tmdb_id"] for m in await movies.all(None, include_expired=True)] == [3]

    def test_ttl_must_be_positive(self, engine):
        """ttl_ms of zero is a configuration error."""
        with pytest.raises(ValueError):
            engine.cache_crud("movie", ttl_ms=0)

    def test_default_ttl_from_settings(self, engine, settings):
        """Without ttl_ms the engine default applies."""
        assert engine.cache_crud("movie").ttl_ms == settings.cache_ttl_ms


class TestFetching:
    """Tests for load and refresh."""

    @pytest.mark.asyncio
    async def test_load_fetches_once(self, engine, users, tmdb):
        """load fetches on a miss and serves the cache afterwards."""
        movies = engine.cache_crud("movie", fetcher=tmdb, ttl_ms=TTL)
        first = await movies.load(None, key=603)
        assert first["cache_hit"] is False
        assert first["tmdb_id"] == 603
        second = await movies.load(None, key=603)
        assert second["cache_hit"] is True
        assert second["_id"] == first["_id"]
        assert tmdb.calls == [603]

    @pytest.mark.asyncio
    async def test_load_refetches_expired(self, engine, users, tmdb, clock):
        """Expired entries are fetched again and updated in place."""
        movies = engine.cache_crud("movie", fetcher=tmdb, ttl_ms=TTL)
        first = await movies.load(None, key=603)
        clock.advance(TTL)
        second = await movies.load(None, key=603)
        assert second["cache_hit"] is False
        assert second["_id"] == first["_id"]
        assert second["title"] == "Movie 603 v2"

    @pytest.mark.asyncio
    async def test_refresh_always_fetches(self, engine, users, tmdb):
        """refresh ignores a fresh entry."""
        movies = engine.cache_crud("movie", fetcher=tmdb, ttl_ms=TTL)
        await movies.load(None, key=603)
        refreshed = await movies.refresh(None, key=603)
        assert refreshed["cache_hit"] is False
        assert tmdb.calls == [603, 603]

    @pytest.mark.asyncio
    async def test_on_fetch_transform(self, engine, users):
        """on_fetch reshapes fetched data before it is stored."""

        def fetch(key):
            return {"name": "The Matrix", "blurb": "Red pill"}

        def reshape(data):
            return {"title": data["name"], "overview": data["blurb"]}

        movies = engine.cache_crud("movie", fetcher=fetch, on_fetch=reshape, ttl_ms=TTL)
        doc = await movies.load(None, key=603)
        assert doc["title"] == "The Matrix"
        assert doc["overview"] == "Red pill"

    @pytest.mark.asyncio
    async def test_no_fetcher(self, engine, users):
        """load without a fetcher is NO_FETCHER."""
        movies = engine.cache_crud("movie", ttl_ms=TTL)
        with pytest.raises(CrudError) as exc_info:
            await movies.load(None, key=603)
        assert exc_info.value.code == ErrorCode.NO_FETCHER
        assert exc_info.value.debug == "movie:load"

    @pytest.mark.asyncio
    async def test_fetch_rate_limit(self, engine, users, tmdb):
        """Fetches per key are rate limited."""
        movies = engine.cache_crud(
            "movie", fetcher=tmdb, ttl_ms=TTL, rate_limit=RateLimit(max=1, window_ms=60_000)
        )
        await movies.refresh(None, key=603)
        with pytest.raises(CrudError) as exc_info:
            await movies.refresh(None, key=603)
        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        await movies.refresh(None, key=604)
