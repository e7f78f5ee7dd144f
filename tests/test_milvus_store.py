"""
Milvus-backed chunk store against a MagicMock MilvusClient: collection
setup, vector mirroring, search post-filtering and deletes.
"""

from unittest.mock import MagicMock

import pytest

from conftest import EMBED_DIM, make_chunk, unit
from src.core.errors import StoreError
from src.core.models import ChunkFilter
from src.indexing.milvus_ops import MilvusChunkStore, build_filter_expr


@pytest.fixture
def client():
    client = MagicMock()
    client.has_collection.return_value = True
    client.search.return_value = [[]]
    return client


@pytest.fixture
def store(client):
    return MilvusChunkStore(collection="chunks_test", dimension=EMBED_DIM, client=client)


@pytest.fixture
def seeded(store, session):
    sid = session["session_id"]
    chunks = [
        make_chunk(sid, name="load", start_line=1, end_line=5, is_async=True),
        make_chunk(sid, name="Repo", start_line=10, end_line=40, kind="class"),
    ]
    store.upsert_chunks(sid, chunks)
    store.attach_embeddings([c.chunk_id for c in chunks], [unit(1.0), unit(0.0, 1.0)], "m1")
    return sid, chunks


def test_filter_expression():
    assert build_filter_expr("s1") == 'session_id == "s1"'
    expr = build_filter_expr("s1", ChunkFilter(kinds=["function", "class"], min_complexity=2, is_async=False))
    assert expr == ('session_id == "s1" and kind in ["function", "class"] '
                    'and complexity >= 2 and is_async == false')
    assert build_filter_expr('a"b') == 'session_id == "a\\"b"'


class TestCollection:
    def test_created_when_missing(self, client, store):
        client.has_collection.return_value = False
        store.ensure_collection()
        client.create_collection.assert_called_once()
        assert client.create_collection.call_args.kwargs["collection_name"] == "chunks_test"
        store.ensure_collection()
        assert client.create_collection.call_count == 1

    def test_existing_collection_reused(self, client, store):
        store.ensure_collection()
        client.create_collection.assert_not_called()


class TestMirroring:
    def test_embeddings_upserted(self, client, seeded):
        sid, chunks = seeded
        data = client.upsert.call_args.kwargs["data"]
        assert [d["chunk_id"] for d in data] == [c.chunk_id for c in chunks]
        assert data[0]["session_id"] == sid
        assert data[0]["is_async"] is True
        assert len(data[0]["vector"]) == EMBED_DIM

    def test_upsert_failure_is_store_error(self, client, store, session):
        sid = session["session_id"]
        chunk = make_chunk(sid)
        store.upsert_chunks(sid, [chunk])
        client.upsert.side_effect = RuntimeError("connection refused")
        with pytest.raises(StoreError):
            store.attach_embeddings([chunk.chunk_id], [unit(1.0)], "m1")


class TestSimilar:
    def test_hits_thresholded_and_ordered(self, client, store, seeded):
        sid, (load, repo) = seeded
        client.search.return_value = [[
            {"id": repo.chunk_id, "distance": 0.91},
            {"id": load.chunk_id, "distance": 0.91},
            {"id": "gone", "distance": 0.99},
            {"id": load.chunk_id + "x", "distance": 0.1},
        ]]
        got = store.similar(sid, unit(1.0), threshold=0.5)
        # equal similarity breaks on chunk_id; unknown ids are dropped
        assert [sc.chunk.chunk_id for sc in got] == sorted([load.chunk_id, repo.chunk_id])
        kwargs = client.search.call_args.kwargs
        assert kwargs["filter"] == f'session_id == "{sid}"'
        assert kwargs["limit"] == 10

    def test_exclude_and_post_filter(self, client, store, seeded):
        sid, (load, repo) = seeded
        client.search.return_value = [[
            {"id": load.chunk_id, "distance": 0.9},
            {"id": repo.chunk_id, "distance": 0.8},
        ]]
        got = store.similar(sid, unit(1.0), ChunkFilter(logical_path="src/other.js"), top_k=5,
                            threshold=0.0, exclude_chunk_id=load.chunk_id)
        assert got == []
        assert client.search.call_args.kwargs["limit"] == 6

    def test_wrong_dimension(self, store, seeded):
        sid, _ = seeded
        with pytest.raises(StoreError):
            store.similar(sid, [1.0, 0.0])

    def test_search_failure_is_store_error(self, client, store, seeded):
        sid, _ = seeded
        client.search.side_effect = RuntimeError("timeout")
        with pytest.raises(StoreError):
            store.similar(sid, unit(1.0))


class TestDeletes:
    def test_delete_session_clears_both_sides(self, client, store, seeded):
        sid, _ = seeded
        assert store.delete_session(sid) == 2
        assert store.get_session(sid) == []
        client.delete.assert_called_with(collection_name="chunks_test", filter=f'session_id == "{sid}"')

    def test_delete_file_removes_vectors(self, client, store, seeded):
        sid, chunks = seeded
        removed = store.delete_file(sid, "f1")
        assert sorted(removed) == sorted(c.chunk_id for c in chunks)
        assert sorted(client.delete.call_args.kwargs["ids"]) == sorted(removed)

    def test_embed_failure_drops_vector(self, client, store, seeded):
        _, (load, _) = seeded
        store.mark_embed_failed([load.chunk_id])
        client.delete.assert_called_with(collection_name="chunks_test", ids=[load.chunk_id])
