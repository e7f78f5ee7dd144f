"""
SQL chunk store: upsert, embeddings, filters, cosine ranking and deletes.
"""

import pytest

from conftest import EMBED_DIM, make_chunk, unit
from src.core.errors import StoreError
from src.core.models import ChunkFilter
from src.indexing.chunk_store import SqlChunkStore, rank_by_cosine


@pytest.fixture
def store():
    return SqlChunkStore(dimension=EMBED_DIM)


@pytest.fixture
def sid(session):
    return session["session_id"]


def _seed(store, sid):
    chunks = [
        make_chunk(sid, name="load", start_line=1, end_line=5, kind="function", complexity=3, is_async=True),
        make_chunk(sid, name="save", start_line=10, end_line=20, kind="function", complexity=1),
        make_chunk(sid, name="Repo", start_line=30, end_line=60, kind="class", complexity=5, file_id="f2",
                   logical_path="src/repo.js"),
    ]
    store.upsert_chunks(sid, chunks)
    return chunks


# ── writes ──

class TestWrites:
    def test_upsert_is_idempotent(self, store, sid):
        chunks = _seed(store, sid)
        assert store.upsert_chunks(sid, chunks) == 3
        assert len(store.get_session(sid)) == 3

    def test_upsert_rejects_foreign_session(self, store, sid):
        with pytest.raises(StoreError):
            store.upsert_chunks(sid, [make_chunk("someone-else")])

    def test_chunk_round_trips_metadata(self, store, sid):
        chunks = _seed(store, sid)
        got = store.get_chunk(chunks[0].chunk_id)
        assert got.is_async
        assert [p.name for p in got.parameters] == ["req"]
        assert got.status == "pending-embedding"
        assert store.get_chunk("missing") is None

    def test_attach_embeddings(self, store, sid):
        chunks = _seed(store, sid)
        assert store.attach_embeddings([chunks[0].chunk_id], [unit(1.0)], "m1") == 1
        got = store.get_chunk(chunks[0].chunk_id)
        assert got.embedding == unit(1.0)
        assert got.embedding_model == "m1"
        assert got.status == "embedded"

    def test_attach_rejects_wrong_dimension(self, store, sid):
        chunks = _seed(store, sid)
        with pytest.raises(StoreError):
            store.attach_embeddings([chunks[0].chunk_id], [[1.0, 0.0]], "m1")
        with pytest.raises(StoreError):
            store.attach_embeddings([chunks[0].chunk_id], [], "m1")
        assert not store.get_chunk(chunks[0].chunk_id).has_embedding

    def test_mark_embed_failed_clears_vector(self, store, sid):
        chunks = _seed(store, sid)
        store.attach_embeddings([chunks[1].chunk_id], [unit(0.0, 1.0)], "m1")
        store.mark_embed_failed([chunks[1].chunk_id])
        got = store.get_chunk(chunks[1].chunk_id)
        assert got.embedding is None
        assert got.status == "embed-failed"


# ── reads ──

class TestReads:
    def test_filters(self, store, sid):
        _seed(store, sid)
        assert {c.name for c in store.get_session(sid, ChunkFilter(kinds=["class"]))} == {"Repo"}
        assert {c.name for c in store.get_session(sid, ChunkFilter(min_complexity=2))} == {"load", "Repo"}
        assert {c.name for c in store.get_session(sid, ChunkFilter(is_async=True))} == {"load"}
        assert {c.name for c in store.get_session(sid, ChunkFilter(logical_path="src/repo.js"))} == {"Repo"}

    def test_session_order_is_path_then_line(self, store, sid):
        _seed(store, sid)
        assert [c.name for c in store.get_session(sid)] == ["load", "save", "Repo"]

    def test_similar_orders_and_thresholds(self, store, sid):
        chunks = _seed(store, sid)
        store.attach_embeddings(
            [c.chunk_id for c in chunks],
            [unit(1.0), unit(0.9, 0.1), unit(0.0, 1.0)],
            "m1",
        )
        hits = store.similar(sid, unit(1.0), top_k=10, threshold=0.5)
        assert [h.chunk.name for h in hits] == ["load", "save"]
        assert hits[0].similarity == pytest.approx(1.0)

        hits = store.similar(sid, unit(1.0), top_k=1, threshold=0.0)
        assert [h.chunk.name for h in hits] == ["load"]

        hits = store.similar(sid, unit(1.0), threshold=0.0, exclude_chunk_id=chunks[0].chunk_id)
        assert hits[0].chunk.name == "save"

    def test_similar_skips_unembedded_and_checks_dimension(self, store, sid):
        _seed(store, sid)
        assert store.similar(sid, unit(1.0), threshold=0.0) == []
        with pytest.raises(StoreError):
            store.similar(sid, [1.0, 0.0])

    def test_statistics(self, store, sid):
        chunks = _seed(store, sid)
        store.attach_embeddings([chunks[2].chunk_id], [unit(1.0)], "m1")
        stats = store.statistics(sid)
        assert stats["totalChunks"] == 3
        assert stats["embeddedChunks"] == 1
        assert stats["byKind"] == {"function": 2, "class": 1}
        assert stats["byComplexity"] == {"3": 1, "1": 1, "5": 1}
        assert stats["avgComplexity"] == 3.0


# ── deletes ──

class TestDeletes:
    def test_delete_file(self, store, sid):
        chunks = _seed(store, sid)
        removed = store.delete_file(sid, "f2")
        assert removed == [chunks[2].chunk_id]
        assert len(store.get_session(sid)) == 2

    def test_delete_session_leaves_other_sessions(self, store, sid, user):
        from src.sessions.registry import get_session_registry

        other = get_session_registry().create(user["user_id"], name="other")["session_id"]
        _seed(store, sid)
        store.upsert_chunks(other, [make_chunk(other)])
        assert store.delete_session(sid) == 3
        assert store.get_session(sid) == []
        assert len(store.get_session(other)) == 1
        assert store.statistics(sid)["avgComplexity"] == 0.0


# ── ranking ──

def test_rank_ties_break_by_chunk_id():
    a = make_chunk(name="a", embedding=unit(1.0))
    b = make_chunk(name="b", embedding=unit(1.0))
    ranked = rank_by_cosine([b, a], unit(2.0), threshold=0.0, top_k=5)
    assert [r.chunk.chunk_id for r in ranked] == sorted([a.chunk_id, b.chunk_id])


def test_rank_zero_query_returns_nothing():
    assert rank_by_cosine([make_chunk(embedding=unit(1.0))], unit(), threshold=0.0, top_k=5) == []
