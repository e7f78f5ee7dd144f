"""
Durable job mirror, event log and the immutable migration history.
"""

import time

import pytest

from src.core.errors import NotFoundError, StoreError
from src.history.store import HistoryStore, ProgressStore
from src.tasks.task_state import JobKind, JobState, JobStatus


def _state(job_id="j1", session_id="s1", **kw):
    return JobState(job_id=job_id, kind=JobKind.transform, status=JobStatus.queued,
                    session_id=session_id, user_id="alice", **kw)


def _per_file(path="src/app.js", migrated="src/app.ts"):
    return [{"fileId": "f1", "logicalPath": path, "migratedPath": migrated, "migratedCode": "let a: number = 1;"}]


# ── progress mirror ──

class TestProgressStore:
    def test_save_and_snapshot(self):
        store = ProgressStore()
        state = _state(request={"command": "Add types"})
        store.save_job(state)
        state.status = JobStatus.running
        state.progress = 40
        state.phase = "transforming"
        state.warnings = ["slow file"]
        store.save_job(state)

        job = store.get_job("j1")
        assert job["status"] == "running"
        assert job["request"] == {"command": "Add types"}
        snap = store.snapshot("j1")
        assert snap["progressPercent"] == 40
        assert snap["phase"] == "transforming"
        assert snap["warnings"] == ["slow file"]
        assert store.get_job("missing") is None
        assert store.snapshot("missing") is None

    def test_events_are_append_only_and_paged(self):
        store = ProgressStore()
        store.save_job(_state())
        for name in ("enqueued", "leased", "stage"):
            store.record_event("j1", name, {"n": name})
        events = store.events("j1")
        assert [e["event"] for e in events] == ["enqueued", "leased", "stage"]
        assert events[2]["data"] == {"n": "stage"}
        assert [e["event"] for e in store.events("j1", after_id=events[0]["id"], limit=1)] == ["leased"]

    def test_jobs_for_session_and_delete(self):
        store = ProgressStore()
        for i in range(3):
            store.save_job(_state(job_id=f"j{i}", created_at=1000.0 + i))
        store.save_job(_state(job_id="other", session_id="s2"))
        store.record_event("j0", "enqueued")

        page = store.jobs_for_session("s1", page=1, page_size=2)
        assert page["total"] == 3
        assert [j["job_id"] for j in page["items"]] == ["j2", "j1"]

        assert store.delete_for_session("s1") == 3
        assert store.get_job("j0") is None
        assert store.events("j0") == []
        assert store.get_job("other") is not None


# ── history ──

class TestHistoryStore:
    def test_save_and_detail(self, session):
        store = HistoryStore()
        saved = store.save_record(session["session_id"], "typescript", _per_file(),
                                  validation={"successRate": 1.0}, plan={"riskLevel": "Low"},
                                  statistics={"chunksAttempted": 1}, job_id="j1", user_id=session["user_id"],
                                  command="Add types")
        got = store.detail(saved["migration_id"])
        assert got["per_file"][0]["migratedPath"] == "src/app.ts"
        assert got["validation"] == {"successRate": 1.0}
        assert got["command"] == "Add types"

    def test_detail_missing(self):
        with pytest.raises(NotFoundError):
            HistoryStore().detail("nope")

    def test_record_requires_session(self):
        with pytest.raises(StoreError):
            HistoryStore().save_record("no-such-session", "typescript", [], {}, {}, {})

    def test_duplicate_id_rejected(self, session):
        store = HistoryStore()
        store.save_record(session["session_id"], "typescript", [], {}, {}, {}, migration_id="m1")
        with pytest.raises(StoreError):
            store.save_record(session["session_id"], "typescript", [], {}, {}, {}, migration_id="m1")

    def test_history_newest_first_without_code(self, session):
        store = HistoryStore()
        sid = session["session_id"]
        first = store.save_record(sid, "typescript", _per_file(), {}, {}, {})
        time.sleep(0.01)
        second = store.save_record(sid, "python3", _per_file(migrated="src/app.py"), {}, {}, {})

        listed = store.history_for(sid, page=1, page_size=1)
        assert listed["total"] == 2
        [item] = listed["items"]
        assert item["migration_id"] == second["migration_id"]
        assert item["files"] == [{"logicalPath": "src/app.js", "migratedPath": "src/app.py"}]
        assert "per_file" not in item

        assert store.history_for(sid, page=2, page_size=1)["items"][0]["migration_id"] == first["migration_id"]
