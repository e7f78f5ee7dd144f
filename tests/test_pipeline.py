"""
End-to-end flows on fakeredis with dry-run model clients: upload, index,
transform, cancellation and deadlines. Jobs run on the test thread via drain().
"""

import io
import zipfile
from pathlib import Path

import pytest

from conftest import SAMPLE_JS, SAMPLE_PY, drain
from config.settings import settings
from src.core.errors import ErrorCode, ValidationError
from src.core.models import MigrationOptions, MigrationRequest
from src.history.store import get_history_store
from src.indexing.chunk_store import get_chunk_store
from src.ingest import upload
from src.ingest.upload import commit_upload, list_files
from src.pipelines.coordinator import get_coordinator
from src.pipelines.submit import submit_index, submit_transform
from src.pipelines.validation import dangerous_pattern, validate_request
from src.sessions.registry import READY, get_session_registry
from src.graphs.transform_graph import run_bounded
from src.tasks.task_state import JobStatus


def _request(session, command="Convert these modules to TypeScript with strict types", target="typescript", **opts):
    return MigrationRequest(
        session_id=session["session_id"],
        user_id=session["user_id"],
        command=command,
        target_dialect=target,
        options=MigrationOptions(**opts),
    )


@pytest.fixture
def indexed(session, queue):
    """A READY session holding SAMPLE_JS and SAMPLE_PY."""
    sid, uid = session["session_id"], session["user_id"]
    commit_upload(sid, uid, SAMPLE_JS, "src/users.js")
    commit_upload(sid, uid, SAMPLE_PY, "tools/loader.py")
    submit_index(sid, uid)
    [job] = drain(queue)
    assert job.status == JobStatus.completed
    return session


# ── index ──

class TestIndex:
    def test_index_job(self, indexed, queue):
        sid = indexed["session_id"]
        assert get_session_registry().get(sid, indexed["user_id"])["state"] == READY
        stats = get_chunk_store().statistics(sid)
        assert stats["totalChunks"] > 0
        assert stats["embeddedChunks"] == stats["totalChunks"]
        assert {f["status"] for f in list_files(sid)} == {"extracted"}

        [done] = queue.recent("completed")
        assert done.result["phase"] == "completed"
        assert done.result["files"] == {"total": 2, "extracted": 2, "skipped": 0, "failed": 0}
        assert done.result["embedRate"] == 1.0

    def test_nothing_to_index(self, indexed, queue):
        with pytest.raises(ValidationError) as exc:
            submit_index(indexed["session_id"], indexed["user_id"])
        assert exc.value.code == ErrorCode.INVALID_STATE

    def test_full_reindex_rewrites_same_chunks(self, indexed, queue):
        sid = indexed["session_id"]
        before = sorted(c.chunk_id for c in get_chunk_store().get_session(sid))
        submit_index(sid, indexed["user_id"], full=True)
        drain(queue)
        assert sorted(c.chunk_id for c in get_chunk_store().get_session(sid)) == before

    def test_index_dedupe(self, session, queue):
        sid, uid = session["session_id"], session["user_id"]
        commit_upload(sid, uid, SAMPLE_JS, "src/users.js")
        first, dedup = submit_index(sid, uid)
        assert not dedup
        again, dedup = submit_index(sid, uid)
        assert dedup
        assert again.job_id == first.job_id

    def test_unsupported_file_is_skipped_not_fatal(self, session, queue):
        sid, uid = session["session_id"], session["user_id"]
        commit_upload(sid, uid, b"import Foundation\nfunc hello() {}\n", "App/main.swift")
        commit_upload(sid, uid, SAMPLE_JS, "src/users.js")
        submit_index(sid, uid)
        [job] = drain(queue)
        assert job.status == JobStatus.completed
        assert job.result["files"]["skipped"] == 1
        assert any("swift" in w for w in job.warnings)


# ── transform ──

class TestTransform:
    def test_dry_run_keeps_bytes_and_writes_record(self, indexed, queue):
        sid = indexed["session_id"]
        submit_transform(_request(indexed, similarity_threshold=0.0, source_dialect="javascript"))
        [job] = drain(queue)

        assert job.status == JobStatus.completed
        assert job.phase == "completed"
        assert job.result["targetDialect"] == "typescript"
        assert job.result["plan"]["riskLevel"] in ("Low", "Medium", "High")
        assert job.result["statistics"]["chunksAnalyzed"] > 0
        assert get_session_registry().get(sid, indexed["user_id"])["state"] == READY

        record = get_history_store().detail(job.result["migrationId"])
        [js] = record["per_file"]
        assert js["logicalPath"] == "src/users.js"
        assert js["migratedPath"] == "src/users.ts"
        # the dry-run client echoes each fragment, so the composed file is the original
        assert js["migratedBytes"] == SAMPLE_JS.decode()
        assert js["statistics"]["chunksFailed"] == 0
        assert record["validation"]["successRate"] == 1.0
        assert get_history_store().history_for(sid)["total"] == 1

    def test_source_filter_limits_candidates(self, indexed, queue):
        submit_transform(_request(indexed, target="python3", source_dialect="javascript", similarity_threshold=0.0))
        [job] = drain(queue)
        assert job.status == JobStatus.completed
        assert [f["logicalPath"] for f in job.result["files"]] == ["src/users.js"]
        assert job.result["files"][0]["migratedPath"] == "src/users.py"

    def test_requires_ready_session(self, session, queue):
        with pytest.raises(ValidationError) as exc:
            submit_transform(_request(session))
        assert exc.value.code == ErrorCode.INVALID_STATE

    def test_cancel_while_running(self, indexed, queue):
        state, _ = submit_transform(_request(indexed))
        leased = queue.lease()
        queue.cancel(state.job_id)
        final = get_coordinator().run(leased)

        assert final.status == JobStatus.cancelled
        assert final.result["reason"] == "cancelled"
        assert "migrationId" not in final.result
        assert get_history_store().history_for(indexed["session_id"])["total"] == 0
        assert get_session_registry().get(indexed["session_id"], indexed["user_id"])["state"] == READY

    def test_deadline_stops_as_timed_out(self, indexed, queue, monkeypatch):
        monkeypatch.setattr(settings.transform, "job_timeout_seconds", 1e-9)
        submit_transform(_request(indexed))
        [job] = drain(queue)
        assert job.status == JobStatus.cancelled
        assert job.result["reason"] == "timed_out"
        assert job.errors[-1]["code"] == "TIMED_OUT"

    def test_validation_failure_is_not_retried(self, indexed, queue, monkeypatch):
        submit_transform(_request(indexed))
        # tighten the rules after submit so the validating stage rejects the request
        monkeypatch.setattr(settings.transform, "command_max_chars", 12)
        [job] = drain(queue)
        assert job.status == JobStatus.failed
        assert job.errors[0]["code"] == "INVALID_FIELD"
        assert get_session_registry().get(indexed["session_id"], indexed["user_id"])["state"] == READY


# ── request validation ──

class TestValidation:
    def test_dangerous_command(self, session):
        assert dangerous_pattern("please rm -rf the build dir") == r"rm\s+-rf"
        with pytest.raises(ValidationError) as exc:
            validate_request(_request(session, command="migrate then DROP DATABASE prod"))
        assert exc.value.code == ErrorCode.DANGEROUS_COMMAND

    @pytest.mark.parametrize("command,target,opts,code", [
        ("short", "typescript", {}, ErrorCode.INVALID_FIELD),
        ("Convert everything please", "cobol", {}, ErrorCode.INVALID_DIALECT),
        ("Convert everything please", "typescript", {"similarity_threshold": 1.5}, ErrorCode.INVALID_FIELD),
        ("Convert everything please", "typescript", {"top_k": 0}, ErrorCode.INVALID_FIELD),
        ("Convert everything please", "typescript", {"kinds": ["lambda"]}, ErrorCode.INVALID_FIELD),
        ("Convert everything please", "typescript", {"source_dialect": "cobol"}, ErrorCode.INVALID_DIALECT),
    ])
    def test_rejections(self, session, command, target, opts, code):
        with pytest.raises(ValidationError) as exc:
            validate_request(_request(session, command=command, target=target, **opts))
        assert exc.value.code == code

    def test_target_aliases(self, session):
        assert validate_request(_request(session, target="TS")).value == "typescript"


# ── bounded runner ──

class TestRunBounded:
    def test_sequential_stop(self):
        done = []
        stopped = run_bounded([1, 2, 3], lambda x: x * 10, 1, lambda: len(done) >= 2, done.append)
        assert stopped
        assert done == [10, 20]

    def test_parallel_runs_all(self):
        done = []
        stopped = run_bounded(list(range(8)), lambda x: x, 3, lambda: False, done.append)
        assert not stopped
        assert sorted(done) == list(range(8))

    def test_parallel_stop_lets_in_flight_finish(self):
        done = []
        stopped = run_bounded(list(range(20)), lambda x: x, 2, lambda: len(done) >= 1, done.append)
        assert stopped
        assert 1 <= len(done) < 20


# ── boundaries ──

LATIN1_JS = b"export function greet(name) {\n  const word = 'caf\xe9';\n  return word + ' ' + name;\n}\n"

# threshold 1.0 sends selection to the relevance fallback, so every file's chunks are candidates
EVERY_CHUNK = {"similarity_threshold": 1.0, "top_k": 100, "source_dialect": "javascript"}


def _stored_row(session_id, logical_path):
    return next(r for r in upload.files_to_index(session_id, include_indexed=True) if r.logical_path == logical_path)


class TestBoundaries:
    def test_archive_with_no_allowed_files_still_reaches_ready(self, session, queue):
        sid, uid = session["session_id"], session["user_id"]
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("blob.bin", b"\x00\x01")
            zf.writestr("img/logo.png", b"\x89PNG")
        out = commit_upload(sid, uid, buf.getvalue(), "assets.zip")
        assert out["fileIds"] == []

        submit_index(sid, uid)
        [job] = drain(queue)
        assert job.status == JobStatus.completed
        assert job.result["files"]["total"] == 0
        assert job.result["embedRate"] == 1.0
        assert get_session_registry().get(sid, uid)["state"] == READY

    def test_latin1_file_transforms_losslessly(self, session, queue):
        sid, uid = session["session_id"], session["user_id"]
        commit_upload(sid, uid, LATIN1_JS, "src/b.js")
        commit_upload(sid, uid, SAMPLE_JS, "src/users.js")
        submit_index(sid, uid)
        drain(queue)

        submit_transform(_request(session, **EVERY_CHUNK))
        [job] = drain(queue)
        assert job.status == JobStatus.completed
        per_file = {f["logicalPath"]: f for f in get_history_store().detail(job.result["migrationId"])["per_file"]}
        assert per_file["src/b.js"]["migratedBytes"] == LATIN1_JS.decode("latin-1")
        assert per_file["src/users.js"]["migratedBytes"] == SAMPLE_JS.decode()

    def test_changed_file_is_skipped_not_fatal(self, session, queue):
        sid, uid = session["session_id"], session["user_id"]
        commit_upload(sid, uid, LATIN1_JS, "src/b.js")
        commit_upload(sid, uid, SAMPLE_JS, "src/users.js")
        submit_index(sid, uid)
        drain(queue)
        row = _stored_row(sid, "src/users.js")
        Path(row.bytes_ref).write_bytes(SAMPLE_JS.replace(b"fetchUsers", b"fetchPeople"))

        submit_transform(_request(session, **EVERY_CHUNK))
        [job] = drain(queue)
        assert job.status == JobStatus.completed
        assert [f["logicalPath"] for f in job.result["files"]] == ["src/b.js"]
        assert any(e["scope"] == "file:src/users.js" and e["code"] == "STORE_FAILURE" for e in job.errors)
        assert any(w.startswith("src/users.js: skipped") for w in job.warnings)

    def test_identical_transform_requests_share_a_job(self, indexed, queue):
        first, dedup = submit_transform(_request(indexed))
        assert not dedup
        again, dedup = submit_transform(_request(indexed))
        assert dedup
        assert again.job_id == first.job_id
        other, dedup = submit_transform(_request(indexed, target="python3"))
        assert not dedup
        assert other.job_id != first.job_id

    def test_failed_reindex_keeps_session_ready(self, indexed, queue, monkeypatch):
        sid, uid = indexed["session_id"], indexed["user_id"]
        before = get_chunk_store().statistics(sid)["totalChunks"]

        def broken(*args, **kwargs):
            raise RuntimeError("parser crashed")

        monkeypatch.setattr("src.graphs.index_graph.chunker.extract", broken)
        submit_index(sid, uid, full=True)
        [job] = drain(queue)
        assert job.status == JobStatus.failed
        assert get_session_registry().get(sid, uid)["state"] == READY
        assert get_chunk_store().statistics(sid)["totalChunks"] == before
        submit_transform(_request(indexed))
