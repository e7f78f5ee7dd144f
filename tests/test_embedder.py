"""
Embedding client: batching, retries, per-chunk failures, cancellation and
the query cache. The provider is a scripted fake; sleeps are recorded.
"""

from types import SimpleNamespace

import pytest

from conftest import make_chunk
from config.settings import EmbeddingSettings
from src.core.errors import Cancelled, EmbedError, ErrorCode
from src.indexing.embedder import EmbeddingClient, build_embedding_text, pseudo_vector

DIM = 4


class FakeProvider:
    """Replays scripted responses; an Exception entry is raised instead."""

    def __init__(self, script=None, dim=DIM):
        self.config = SimpleNamespace(name="fake")
        self.script = list(script or [])
        self.dim = dim
        self.calls = []

    def embed(self, payload, timeout=None, max_retries=0, error_cls=None):
        self.calls.append(payload)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            if step is not None:
                return step
        n = len(payload["input"])
        return {"data": [{"index": i, "embedding": [0.5] * self.dim} for i in reversed(range(n))]}


def _config(**overrides):
    base = dict(dimension=DIM, batch_size=2, batch_delay_ms=0, retries=3,
                base_delay_ms=100, max_jitter_ms=0, neighbor_context=0)
    base.update(overrides)
    return EmbeddingSettings(**base)


def _client(provider, **overrides):
    sleeps = []
    client = EmbeddingClient(provider=provider, config=_config(**overrides), dry_run=False, sleep=sleeps.append)
    return client, sleeps


def _chunks(n):
    return [make_chunk(name=f"fn{i}", start_line=i * 10 + 1, end_line=i * 10 + 3) for i in range(n)]


# ── batching ──

class TestBatching:
    def test_one_result_per_chunk_in_order(self):
        provider = FakeProvider()
        client, _ = _client(provider)
        chunks = _chunks(5)
        results = client.embed(chunks)
        assert [r.chunk_id for r in results] == [c.chunk_id for c in chunks]
        assert all(r.ok and len(r.vector) == DIM for r in results)
        assert [len(p["input"]) for p in provider.calls] == [2, 2, 1]

    def test_on_batch_called_per_batch(self):
        seen = []
        client, _ = _client(FakeProvider())
        client.embed(_chunks(3), on_batch=lambda batch: seen.append(len(batch)))
        assert seen == [2, 1]

    def test_pacing_sleep_between_batches(self):
        client, sleeps = _client(FakeProvider(), batch_delay_ms=500)
        client.embed(_chunks(4))
        assert sleeps == [0.5]

    def test_empty_input(self):
        provider = FakeProvider()
        client, _ = _client(provider)
        assert client.embed([]) == []
        assert provider.calls == []


# ── failures ──

class TestFailures:
    def test_rate_limited_then_success(self):
        provider = FakeProvider([EmbedError(ErrorCode.RATE_LIMITED, "429", status_code=429)])
        client, sleeps = _client(provider)
        results = client.embed(_chunks(2))
        assert all(r.ok for r in results)
        assert len(provider.calls) == 2
        assert sleeps == [0.1]

    def test_backoff_doubles(self):
        script = [EmbedError(ErrorCode.TRANSIENT, "503")] * 2
        client, sleeps = _client(FakeProvider(script))
        client.embed(_chunks(1))
        assert sleeps == [0.1, 0.2]

    def test_retries_exhausted_fail_the_batch(self):
        script = [EmbedError(ErrorCode.RATE_LIMITED, "429")] * 3
        client, _ = _client(FakeProvider(script), batch_size=10)
        results = client.embed(_chunks(2))
        assert not any(r.ok for r in results)
        assert {r.error["code"] for r in results} == {"RATE_LIMITED"}
        assert [r.error["chunk_id"] for r in results] == [r.chunk_id for r in results]

    def test_non_retryable_not_retried(self):
        provider = FakeProvider([EmbedError(ErrorCode.AUTH_FAILED, "401")])
        client, sleeps = _client(provider, batch_size=10)
        results = client.embed(_chunks(2))
        assert len(provider.calls) == 1
        assert sleeps == []
        assert results[0].error["code"] == "AUTH_FAILED"

    def test_failed_batch_does_not_stop_later_batches(self):
        provider = FakeProvider([EmbedError(ErrorCode.INVALID_INPUT, "bad")])
        client, _ = _client(provider)
        results = client.embed(_chunks(4))
        assert [r.ok for r in results] == [False, False, True, True]

    def test_dimension_mismatch_fails_only_that_chunk(self):
        bad = {"data": [{"index": 0, "embedding": [0.1] * DIM}, {"index": 1, "embedding": [0.1] * (DIM + 1)}]}
        client, _ = _client(FakeProvider([bad]))
        results = client.embed(_chunks(2))
        assert results[0].ok
        assert not results[1].ok
        assert results[1].error["code"] == "DIMENSION_MISMATCH"

    def test_short_response_is_invalid_output(self):
        client, _ = _client(FakeProvider([{"data": []}]))
        results = client.embed(_chunks(1))
        assert results[0].error["code"] == "INVALID_OUTPUT"


# ── cancellation ──

def test_cancel_checked_between_batches():
    polls = []

    def cancel_check():
        polls.append(1)
        return True

    client, _ = _client(FakeProvider())
    done = []
    with pytest.raises(Cancelled):
        client.embed(_chunks(4), on_batch=done.append, cancel_check=cancel_check)
    # the first batch completes before the first poll
    assert len(done) == 1
    assert len(polls) == 1


# ── queries and text ──

class TestQuery:
    def test_query_cached(self):
        provider = FakeProvider()
        client, _ = _client(provider)
        first = client.embed_query("convert   callbacks to async")
        second = client.embed_query("convert callbacks to async")
        assert first == second
        assert len(provider.calls) == 1

    def test_query_dimension_mismatch_raises(self):
        client, _ = _client(FakeProvider(dim=DIM + 2))
        with pytest.raises(EmbedError) as exc:
            client.embed_query("anything")
        assert exc.value.code == ErrorCode.DIMENSION_MISMATCH

    def test_dry_run_is_deterministic(self):
        client = EmbeddingClient(config=_config(), dry_run=True)
        assert client.embed_query("same text") == pseudo_vector("same text", DIM)
        assert client.provider_name == "dry_run"


class TestEmbeddingText:
    def test_metadata_header_and_code(self):
        chunk = make_chunk()
        text = build_embedding_text(chunk)
        assert text.startswith("function handler | params: req | complexity: 1 | dialect: javascript")
        assert text.endswith("function handler(req) { return req.body; }")

    def test_neighbors_and_truncation(self):
        before = make_chunk(name="setup", start_line=1)
        chunk = make_chunk(name="handler", start_line=10, code="x  =\n\n 1" * 50)
        text = build_embedding_text(chunk, before=[before], include_metadata=False, max_chars=40)
        assert text.startswith("context: before: function setup(req)")
        assert len(text) == 40
        assert "\n" not in text

    def test_pseudo_vector_is_unit_length(self):
        vec = pseudo_vector("abc", 8)
        assert len(vec) == 8
        assert abs(sum(v * v for v in vec) - 1.0) < 1e-9
