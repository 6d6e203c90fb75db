"""
Unit tests for the document store backends.

Both InMemoryDocumentStore and SqliteDocumentStore run the same suite.

Tests cover:
- Document lifecycle (insert, get, patch, delete)
- Index lookups with prefix matching
- Filters, ordering and cursor pagination
- Full-text search membership
- Transaction reentrancy and rollback
"""

import asyncio

import pytest
import pytest_asyncio

from lazycrud.store import (
    DocumentNotFoundError,
    FilterBuilder,
    InMemoryDocumentStore,
    MalformedCursorError,
    PaginationOpts,
    SqliteDocumentStore,
    StoreConnectionError,
    StoreError,
    UnknownIndexError,
)
from lazycrud.store.base import QuerySpec
from lazycrud.store.memory import InMemoryQuery
from tests.schemas import make_registry

fb = FilterBuilder()


def make_store(backend, tmp_path):
    if backend == "memory":
        return InMemoryDocumentStore(make_registry(), clock=lambda: 1000)
    return SqliteDocumentStore(str(tmp_path / "lazycrud.db"), make_registry(), clock=lambda: 1000)


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    """Connected store for each backend."""
    s = make_store(request.param, tmp_path)
    await s.connect()
    yield s
    await s.close()


async def insert_blogs(store, *titles, **extra):
    return [await store.insert("blog", {"title": t, "user_id": "u1", **extra}) for t in titles]


class TestDocumentLifecycle:
    """Tests for insert/get/patch/delete."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, store):
        """Inserted documents carry _id and _creation_time; None values are dropped."""
        doc_id = await store.insert("blog", {"title": "Hello", "content": None, "user_id": "u1"})
        doc = await store.get(doc_id)
        assert doc == {"_id": doc_id, "_creation_time": 1000, "title": "Hello", "user_id": "u1"}

    @pytest.mark.asyncio
    async def test_get_checks_table(self, store):
        """get() with the wrong table is None."""
        doc_id = await store.insert("blog", {"title": "Hello"})
        assert await store.get(doc_id, "blog") is not None
        assert await store.get(doc_id, "wiki") is None
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_unknown_table(self, store):
        """Inserting into an unregistered table fails."""
        with pytest.raises(StoreError):
            await store.insert("nope", {"x": 1})
        with pytest.raises(StoreError):
            store.query("nope")

    @pytest.mark.asyncio
    async def test_patch_merges_and_removes(self, store):
        """patch merges keys; None removes them; system keys are kept."""
        doc_id = await store.insert("blog", {"title": "Hello", "content": "body", "views": 1})
        await store.patch(doc_id, {"views": 2, "content": None, "_id": "other"})
        doc = await store.get(doc_id)
        assert doc["_id"] == doc_id
        assert doc["views"] == 2
        assert "content" not in doc
        assert doc["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Deleted documents are gone."""
        doc_id = await store.insert("blog", {"title": "Hello"})
        await store.delete(doc_id)
        assert await store.get(doc_id) is None

    @pytest.mark.asyncio
    async def test_missing_document_writes(self, store):
        """patch/delete of a missing id raise DocumentNotFoundError."""
        with pytest.raises(DocumentNotFoundError):
            await store.patch("missing", {"title": "x"})
        with pytest.raises(DocumentNotFoundError):
            await store.delete("missing")

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, store):
        """Mutating a returned document does not change storage."""
        doc_id = await store.insert("blog", {"title": "Hello", "attachments": ["a"]})
        doc = await store.get(doc_id)
        doc["attachments"].append("b")
        doc["title"] = "Changed"
        assert (await store.get(doc_id))["attachments"] == ["a"]
        assert (await store.get(doc_id))["title"] == "Hello"


class TestIndexes:
    """Tests for with_index."""

    @pytest.mark.asyncio
    async def test_prefix_match(self, store):
        """An index can be matched on a prefix of its fields."""
        a = await store.insert("wiki", {"title": "A", "org_id": "o1", "user_id": "u1"})
        b = await store.insert("wiki", {"title": "B", "org_id": "o1", "user_id": "u2"})
        await store.insert("wiki", {"title": "C", "org_id": "o2", "user_id": "u1"})
        by_org = await store.query("wiki").with_index("by_org_user", {"org_id": "o1"}).collect()
        assert [d["_id"] for d in by_org] == [a, b]
        exact = await store.query("wiki").with_index(
            "by_org_user", {"org_id": "o1", "user_id": "u2"}
        ).collect()
        assert [d["_id"] for d in exact] == [b]

    @pytest.mark.asyncio
    async def test_non_prefix_rejected(self, store):
        """Matching a non-prefix field of an index is an error."""
        with pytest.raises(UnknownIndexError):
            store.query("wiki").with_index("by_org_user", {"user_id": "u1"})

    @pytest.mark.asyncio
    async def test_unknown_index(self, store):
        """Undeclared index names are rejected."""
        with pytest.raises(UnknownIndexError):
            store.query("blog").with_index("by_title", {"title": "x"})
        with pytest.raises(UnknownIndexError):
            store.query("blog").with_search_index("by_title", "x")

    @pytest.mark.asyncio
    async def test_integer_keys(self, store):
        """Integer index values match stored integers."""
        doc_id = await store.insert("movie", {"tmdb_id": 603, "title": "The Matrix"})
        await store.insert("movie", {"tmdb_id": 604, "title": "Reloaded"})
        found = await store.query("movie").with_index("by_tmdb_id", {"tmdb_id": 603}).unique()
        assert found["_id"] == doc_id


class TestQueries:
    """Tests for filter, order and terminal operations."""

    @pytest.mark.asyncio
    async def test_filter(self, store):
        """Filters select matching documents in insertion order."""
        for views in (1, 10, 20):
            await store.insert("blog", {"title": f"v{views}", "views": views})
        docs = await store.query("blog").filter(fb.gte(fb.field("views"), 10)).collect()
        assert [d["views"] for d in docs] == [10, 20]

    @pytest.mark.asyncio
    async def test_filter_missing_field(self, store):
        """Comparisons skip documents without the field; eq None matches them."""
        await store.insert("blog", {"title": "no views"})
        await store.insert("blog", {"title": "some views", "views": 5})
        gt = await store.query("blog").filter(fb.gt(fb.field("views"), 0)).collect()
        assert [d["title"] for d in gt] == ["some views"]
        missing = await store.query("blog").filter(fb.eq(fb.field("views"), None)).collect()
        assert [d["title"] for d in missing] == ["no views"]

    @pytest.mark.asyncio
    async def test_boolean_filter(self, store):
        """Boolean fields filter by value."""
        await store.insert("blog", {"title": "draft", "published": False})
        await store.insert("blog", {"title": "live", "published": True})
        docs = await store.query("blog").filter(fb.eq(fb.field("published"), True)).collect()
        assert [d["title"] for d in docs] == ["live"]
        assert docs[0]["published"] is True

    @pytest.mark.asyncio
    async def test_or_filter(self, store):
        """or_ matches any branch."""
        await insert_blogs(store, "a", "b", "c")
        expr = fb.or_(fb.eq(fb.field("title"), "a"), fb.eq(fb.field("title"), "c"))
        docs = await store.query("blog").filter(expr).collect()
        assert [d["title"] for d in docs] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_order_desc(self, store):
        """desc reverses insertion order."""
        await insert_blogs(store, "first", "second", "third")
        docs = await store.query("blog").order("desc").collect()
        assert [d["title"] for d in docs] == ["third", "second", "first"]

    @pytest.mark.asyncio
    async def test_invalid_order(self, store):
        """Only asc and desc are accepted."""
        with pytest.raises(ValueError):
            store.query("blog").order("random")

    @pytest.mark.asyncio
    async def test_take_first_unique(self, store):
        """take/first/unique terminals."""
        await insert_blogs(store, "a", "b")
        assert [d["title"] for d in await store.query("blog").take(1)] == ["a"]
        assert await store.query("blog").take(0) == []
        assert (await store.query("blog").order("desc").first())["title"] == "b"
        assert await store.query("blog").filter(fb.eq(fb.field("title"), "zzz")).unique() is None
        with pytest.raises(StoreError):
            await store.query("blog").unique()

    @pytest.mark.asyncio
    async def test_tables_are_isolated(self, store):
        """Queries only see their own table."""
        await store.insert("blog", {"title": "post"})
        await store.insert("chat", {"title": "room"})
        assert [d["title"] for d in await store.query("chat").collect()] == ["room"]


class TestPagination:
    """Tests for cursor pagination."""

    @pytest.mark.asyncio
    async def test_pages_cover_everything_once(self, store):
        """Following cursors visits every document exactly once."""
        await insert_blogs(store, "1", "2", "3", "4", "5")
        seen = []
        cursor = None
        pages = 0
        while True:
            page = await store.query("blog").paginate({"num_items": 2, "cursor": cursor})
            seen.extend(d["title"] for d in page.page)
            pages += 1
            if page.is_done:
                break
            cursor = page.continue_cursor
        assert seen == ["1", "2", "3", "4", "5"]
        assert pages == 3

    @pytest.mark.asyncio
    async def test_descending_pages(self, store):
        """Cursors respect the query order."""
        await insert_blogs(store, "1", "2", "3")
        first = await store.query("blog").order("desc").paginate(PaginationOpts(num_items=2))
        assert [d["title"] for d in first.page] == ["3", "2"]
        assert not first.is_done
        second = await store.query("blog").order("desc").paginate(
            PaginationOpts(num_items=2, cursor=first.continue_cursor)
        )
        assert [d["title"] for d in second.page] == ["1"]
        assert second.is_done

    @pytest.mark.asyncio
    async def test_exact_page_is_done(self, store):
        """A page that takes the last document is done."""
        await insert_blogs(store, "1", "2")
        page = await store.query("blog").paginate({"num_items": 2})
        assert page.is_done
        assert page.to_dict()["continue_cursor"] == page.continue_cursor

    @pytest.mark.asyncio
    async def test_empty_table(self, store):
        """An empty result is a done page with the incoming cursor."""
        page = await store.query("blog").paginate({"num_items": 5})
        assert page.page == []
        assert page.is_done
        assert page.continue_cursor == ""

    @pytest.mark.asyncio
    async def test_malformed_cursor(self, store):
        """Cursors are opaque positions; garbage is rejected."""
        with pytest.raises(MalformedCursorError):
            await store.query("blog").paginate({"num_items": 5, "cursor": "not-a-cursor"})


class TestSearch:
    """Tests for with_search_index."""

    @pytest.mark.asyncio
    async def test_search_membership(self, store):
        """Documents containing a query term are returned."""
        python_tips, _, packaging = await insert_blogs(
            store, "Python asyncio tips", "Cooking pasta", "Python packaging"
        )
        docs = await store.query("blog").with_search_index("search_field", "python").collect()
        assert {d["_id"] for d in docs} == {python_tips, packaging}

    @pytest.mark.asyncio
    async def test_last_term_is_prefix(self, store):
        """The last term matches as a prefix (search-as-you-type)."""
        (doc_id,) = await insert_blogs(store, "Python asyncio tips")
        docs = await store.query("blog").with_search_index("search_field", "asyn").collect()
        assert [d["_id"] for d in docs] == [doc_id]

    @pytest.mark.asyncio
    async def test_search_follows_patches(self, store):
        """Patched text is searchable; old text is not."""
        (doc_id,) = await insert_blogs(store, "Cooking pasta")
        await store.patch(doc_id, {"title": "Baking bread"})
        q = store.query("blog")
        assert await q.with_search_index("search_field", "pasta").collect() == []
        docs = await store.query("blog").with_search_index("search_field", "bread").collect()
        assert [d["_id"] for d in docs] == [doc_id]

    @pytest.mark.asyncio
    async def test_search_with_filter(self, store):
        """Filters narrow search results."""
        await store.insert("blog", {"title": "Python one", "user_id": "u1"})
        mine = await store.insert("blog", {"title": "Python two", "user_id": "u2"})
        docs = (
            await store.query("blog")
            .with_search_index("search_field", "python")
            .filter(fb.eq(fb.field("user_id"), "u2"))
            .collect()
        )
        assert [d["_id"] for d in docs] == [mine]

    @pytest.mark.asyncio
    async def test_blank_search(self, store):
        """Text without terms matches nothing."""
        await insert_blogs(store, "Python")
        assert await store.query("blog").with_search_index("search_field", "!!!").collect() == []

    @pytest.mark.asyncio
    async def test_search_excludes_index(self, store):
        """Search and index lookups cannot be combined."""
        with pytest.raises(StoreError):
            store.query("blog").with_search_index("search_field", "x").with_index(
                "by_user", {"user_id": "u1"}
            )

    @pytest.mark.asyncio
    async def test_memory_fetch_unknown_search_index(self):
        """A hand-built search spec naming a missing index raises UnknownIndexError."""
        store = InMemoryDocumentStore(make_registry(), clock=lambda: 1000)
        await store.connect()
        spec = QuerySpec(table=store.registry.get("blog"), search=("nope", "python"))
        with pytest.raises(UnknownIndexError):
            await InMemoryQuery(spec, store).collect()


class TestConnectionAndTransactions:
    """Tests for connection state and transactions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    async def test_requires_connect(self, backend, tmp_path):
        """Operations before connect() fail."""
        store = make_store(backend, tmp_path)
        with pytest.raises(StoreConnectionError):
            await store.get("anything")

    @pytest.mark.asyncio
    async def test_transaction_is_reentrant(self, store):
        """The owning task may nest transaction blocks."""
        async with store.transaction():
            async with store.transaction():
                doc_id = await store.insert("blog", {"title": "nested"})
        assert await store.get(doc_id) is not None

    @pytest.mark.asyncio
    async def test_error_rolls_back_writes(self, store):
        """An exception escaping the block undoes its inserts, patches and deletes."""
        kept, dropped = await insert_blogs(store, "kept", "dropped")
        created = []
        with pytest.raises(RuntimeError):
            async with store.transaction():
                created.append(await store.insert("blog", {"title": "new"}))
                await store.patch(kept, {"title": "changed", "views": 3})
                await store.delete(dropped)
                raise RuntimeError("boom")
        assert await store.get(created[0]) is None
        assert (await store.get(kept))["title"] == "kept"
        assert "views" not in await store.get(kept)
        assert (await store.get(dropped))["title"] == "dropped"
        titles = [d["title"] for d in await store.query("blog").collect()]
        assert titles == ["kept", "dropped"]

    @pytest.mark.asyncio
    async def test_nested_error_rolls_back_outer_block(self, store):
        """Inner blocks do not commit on their own."""
        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.insert("blog", {"title": "outer"})
                async with store.transaction():
                    await store.insert("blog", {"title": "inner"})
                raise RuntimeError("boom")
        assert await store.query("blog").collect() == []

    @pytest.mark.asyncio
    async def test_commit_then_reads_outside(self, store):
        """Writes from a finished block are visible to later reads."""
        async with store.transaction():
            doc_id = await store.insert("blog", {"title": "committed"})
            assert (await store.get(doc_id))["title"] == "committed"
        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.patch(doc_id, {"title": "lost"})
                raise RuntimeError("boom")
        assert (await store.get(doc_id))["title"] == "committed"

    @pytest.mark.asyncio
    async def test_transactions_serialize(self, store):
        """Concurrent transaction blocks do not interleave."""
        events = []

        async def worker(name):
            async with store.transaction():
                events.append(f"{name}:start")
                await asyncio.sleep(0)
                events.append(f"{name}:end")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )


class TestPersistence:
    """Data lifetime across close and connect."""

    @pytest.mark.asyncio
    async def test_data_survives_reconnect(self, tmp_path):
        """A new store on the same file sees earlier writes."""
        path = str(tmp_path / "persist.db")
        first = SqliteDocumentStore(path, make_registry())
        await first.connect()
        doc_id = await first.insert("blog", {"title": "Persisted"})
        await first.close()

        second = SqliteDocumentStore(path, make_registry())
        await second.connect()
        assert (await second.get(doc_id))["title"] == "Persisted"
        docs = await second.query("blog").with_search_index("search_field", "persist").collect()
        assert [d["_id"] for d in docs] == [doc_id]
        await second.close()

    @pytest.mark.asyncio
    async def test_memory_close_clears(self):
        """The in-memory store starts empty after close()."""
        store = InMemoryDocumentStore(make_registry())
        await store.connect()
        await store.insert("blog", {"title": "gone"})
        await store.close()
        await store.connect()
        assert store.count("blog") == 0
