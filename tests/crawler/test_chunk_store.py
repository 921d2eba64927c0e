"""
Tests for the SQLModel chunk store, run against an in-memory SQLite database.
"""
import pytest
from sqlalchemy.exc import OperationalError

from src.crawler.chunk_store import ChunkStore, create_store, get_store
from src.crawler.sources import SqliteDatabaseConfig
from src.utils import ConfigError, DocumentChunk, StoreError


def make_chunk(content, url="https://docs.example.com/guide/a", product="example", version="1.0"):
    return DocumentChunk(
        content=content,
        product_name=product,
        version=version,
        heading_hierarchy=["Guide", "Intro"],
        section="Intro",
        url=url,
    )


@pytest.fixture
def store() -> ChunkStore:
    return create_store(SqliteDatabaseConfig(db_path=":memory:"))


class TestUpsertAndLookup:
    def test_empty_store(self, store):
        assert store.count_all() == 0
        assert store.get_stored_hash("missing") is None
        assert store.list_chunk_ids("https://docs.example.com/guide/a") == []

    def test_upsert_stores_row(self, store):
        chunk = make_chunk("alpha")
        store.upsert(chunk, [0.1, 0.2, 0.3], {"breadcrumb": "Guide > Intro"})

        assert store.count_all() == 1
        assert store.get_stored_hash(chunk.chunk_id) == chunk.content_hash
        assert store.list_chunk_ids(chunk.url) == [chunk.chunk_id]

    def test_upsert_replaces_existing_row(self, store):
        chunk = make_chunk("alpha")
        store.upsert(chunk, [0.1, 0.2, 0.3], {"v": 1})
        store.upsert(chunk, [0.3, 0.2, 0.1], {"v": 2})

        assert store.count_all() == 1
        results = store.search([0.3, 0.2, 0.1], limit=1)
        assert results[0]["metadata"] == {"v": 2}
        assert results[0]["similarity"] == pytest.approx(1.0)

    def test_list_stored_urls_by_prefix(self, store):
        store.upsert(make_chunk("a", url="https://docs.example.com/guide/a"), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("a2", url="https://docs.example.com/guide/a"), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("b", url="https://docs.example.com/guide/b"), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("c", url="https://docs.example.com/blog/c"), [1.0, 0.0, 0.0])

        assert store.list_stored_urls("https://docs.example.com/guide/") == [
            "https://docs.example.com/guide/a",
            "https://docs.example.com/guide/b",
        ]

    def test_prefix_wildcards_are_literal(self, store):
        store.upsert(make_chunk("a", url="file:///docs/100%_done/a.md"), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("b", url="file:///docs/100x_done/b.md"), [1.0, 0.0, 0.0])

        assert store.list_stored_urls("file:///docs/100%_") == ["file:///docs/100%_done/a.md"]


class TestDelete:
    def test_delete_by_url(self, store):
        url = "https://docs.example.com/guide/a"
        store.upsert(make_chunk("one", url=url), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("two", url=url), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("other", url="https://docs.example.com/guide/b"), [1.0, 0.0, 0.0])

        assert store.delete(url=url) == 2
        assert store.count_all() == 1

    def test_delete_by_url_and_chunk_id(self, store):
        chunk = make_chunk("one")
        store.upsert(chunk, [1.0, 0.0, 0.0])

        assert store.delete(url="https://docs.example.com/other", chunk_id=chunk.chunk_id) == 0
        assert store.delete(url=chunk.url, chunk_id=chunk.chunk_id) == 1
        assert store.count_all() == 0

    def test_delete_needs_a_filter(self, store):
        with pytest.raises(ValueError):
            store.delete()


class TestSyncMetadata:
    def test_set_get_delete(self, store):
        assert store.get_metadata("validator:x") is None
        store.set_metadata("validator:x", '"etag-1"')
        store.set_metadata("validator:x", '"etag-2"')
        assert store.get_metadata("validator:x") == '"etag-2"'

        store.delete_metadata("validator:x")
        assert store.get_metadata("validator:x") is None

    def test_metadata_does_not_count_as_chunks(self, store):
        store.set_metadata("validator:x", "v")
        assert store.count_all() == 0


class TestSearch:
    def test_results_ranked_by_similarity_and_filtered(self, store):
        store.upsert(make_chunk("exact"), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("close"), [0.9, 0.1, 0.0])
        store.upsert(make_chunk("orthogonal"), [0.0, 1.0, 0.0])
        store.upsert(make_chunk("other product", product="other"), [1.0, 0.0, 0.0])

        results = store.search([1.0, 0.0, 0.0], limit=2, product_name="example")

        assert [r["content"] for r in results] == ["exact", "close"]
        assert results[0]["heading_hierarchy"] == ["Guide", "Intro"]
        assert results[0]["similarity"] >= results[1]["similarity"]

    def test_version_filter(self, store):
        store.upsert(make_chunk("v1 text", version="1.0"), [1.0, 0.0, 0.0])
        store.upsert(make_chunk("v2 text", version="2.0"), [1.0, 0.0, 0.0])

        results = store.search([1.0, 0.0, 0.0], version="2.0")

        assert [r["content"] for r in results] == ["v2 text"]


class TestStoreErrors:
    def test_database_failure_becomes_store_error(self, store, mocker):
        mocker.patch(
            'src.crawler.chunk_store.Session.commit',
            side_effect=OperationalError("COMMIT", {}, Exception("database is locked")),
        )

        with pytest.raises(StoreError):
            store.upsert(make_chunk("alpha"), [1.0, 0.0, 0.0])

    def test_unknown_database_config(self):
        with pytest.raises(ConfigError):
            create_store(object())

    def test_get_store_reuses_store_per_database(self, tmp_path):
        config = SqliteDatabaseConfig(db_path=str(tmp_path / "docs.db"))

        first = get_store(config)
        second = get_store(SqliteDatabaseConfig(db_path=str(tmp_path / "docs.db")))

        assert first is second
        assert (tmp_path / "docs.db").exists()
