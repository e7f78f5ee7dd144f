"""
Session registry (ownership, quotas, state machine, expiry) and upload ingress.
"""

import io
import time
import zipfile
from pathlib import Path

import pytest

from config.settings import settings
from src.core.errors import AuthError, ErrorCode, ExpansionError, NotFoundError, QuotaError, ValidationError
from src.ingest.upload import commit_upload, files_to_index, get_file, list_files, read_file_bytes, set_file_status
from src.sessions.registry import COLLECTING, INDEXING, MIGRATING, READY, get_session_registry


@pytest.fixture
def registry():
    return get_session_registry()


def _zip(entries):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


# ── registry ──

class TestRegistry:
    def test_create_and_get(self, registry, user):
        sess = registry.create(user["user_id"], name="  shop  ", session_settings={"source": "javascript"})
        got = registry.get(sess["session_id"], user["user_id"])
        assert got["name"] == "shop"
        assert got["state"] == COLLECTING
        assert got["settings"] == {"source": "javascript"}
        assert got["expires_at"] > time.time()

    def test_other_user_is_forbidden(self, registry, session, admin):
        with pytest.raises(AuthError) as exc:
            registry.assert_ownership(session["session_id"], admin["user_id"])
        assert exc.value.code == ErrorCode.FORBIDDEN

    def test_missing_session(self, registry, user):
        with pytest.raises(NotFoundError):
            registry.get("nope", user["user_id"])

    def test_active_session_quota(self, registry, user):
        for i in range(settings.sessions.quota_for("basic").max_active_sessions):
            registry.create(user["user_id"], name=f"s{i}")
        with pytest.raises(QuotaError) as exc:
            registry.create(user["user_id"], name="one too many")
        assert exc.value.code == ErrorCode.TOO_MANY_SESSIONS

    def test_list_scoped_to_owner(self, registry, session, admin):
        registry.create(admin["user_id"], name="admin's")
        listed = registry.list(session["user_id"])
        assert [s["session_id"] for s in listed["items"]] == [session["session_id"]]
        assert listed["total"] == 1
        assert registry.list(session["user_id"], state=READY)["total"] == 0
        with pytest.raises(ValidationError):
            registry.list(session["user_id"], state="bogus")

    def test_state_machine(self, registry, session):
        sid = session["session_id"]
        assert registry.set_state(sid, INDEXING)["state"] == INDEXING
        assert registry.set_state(sid, READY)["state"] == READY
        assert registry.set_state(sid, MIGRATING)["state"] == MIGRATING
        assert registry.set_state(sid, READY)["state"] == READY
        # same-state transition is a no-op
        assert registry.set_state(sid, READY)["state"] == READY

    def test_invalid_transition(self, registry, session):
        with pytest.raises(ValidationError) as exc:
            registry.set_state(session["session_id"], MIGRATING)
        assert exc.value.code == ErrorCode.INVALID_STATE

    def test_touch_extends_expiry(self, registry, session):
        before = session["expires_at"]
        time.sleep(0.01)
        assert registry.touch(session["session_id"])["expires_at"] > before

    def test_lazy_expiry(self, registry, user, monkeypatch):
        monkeypatch.setattr(settings.sessions, "ttl_ms", -1000)
        sess = registry.create(user["user_id"], name="short-lived")
        with pytest.raises(NotFoundError):
            registry.get(sess["session_id"], user["user_id"])
        # the expired session no longer counts against the quota
        assert registry.list(user["user_id"])["total"] == 0

    def test_sweeper_purges_expired(self, registry, session):
        commit_upload(session["session_id"], session["user_id"], b"const answer = 42;", "a.js")
        removed = registry.sweep_expired(now=time.time() + 10 * 365 * 24 * 3600)
        assert removed == 1
        assert list_files(session["session_id"]) == []
        assert not (settings.path.uploads / session["session_id"]).exists()

    def test_delete_checks_owner(self, registry, session, admin):
        with pytest.raises(AuthError):
            registry.delete(session["session_id"], admin["user_id"])
        assert registry.delete(session["session_id"], session["user_id"])
        with pytest.raises(NotFoundError):
            registry.delete(session["session_id"], session["user_id"])


# ── upload ──

class TestUpload:
    def test_single_file(self, session):
        sid, uid = session["session_id"], session["user_id"]
        out = commit_upload(sid, uid, b"const answer = 42;", "app.js")
        assert out["stats"] == {"accepted": 1, "skipped": 0, "totalBytes": 18}
        [fid] = out["fileIds"]
        row = get_file(fid)
        assert row.logical_path == "app.js"
        assert row.status == "pending"
        assert read_file_bytes(row) == b"const answer = 42;"
        assert Path(row.bytes_ref).parent == settings.path.uploads / sid

    def test_reupload_replaces_same_path(self, session):
        sid, uid = session["session_id"], session["user_id"]
        first = commit_upload(sid, uid, b"const a = 1;", "app.js")["fileIds"]
        second = commit_upload(sid, uid, b"const a = 2;", "app.js")["fileIds"]
        assert first == second
        assert read_file_bytes(get_file(first[0])) == b"const a = 2;"
        assert len(list_files(sid)) == 1

    def test_zip_upload(self, session):
        blob = _zip([("src/b.js", "let b = 2;"), ("src/a.py", "a = 1"), ("node_modules/x.js", "x"), ("img.png", "p")])
        out = commit_upload(session["session_id"], session["user_id"], blob, "project.zip")
        assert out["stats"]["accepted"] == 2
        assert out["stats"]["skipped"] == 1
        assert [f["logical_path"] for f in list_files(session["session_id"])] == ["src/a.py", "src/b.js"]

    def test_traversal_rejects_whole_upload(self, session):
        blob = _zip([("src/ok.js", "ok();"), ("../evil.js", "evil();")])
        with pytest.raises(ExpansionError):
            commit_upload(session["session_id"], session["user_id"], blob, "project.zip")
        assert list_files(session["session_id"]) == []

    def test_empty_upload(self, session):
        with pytest.raises(ValidationError):
            commit_upload(session["session_id"], session["user_id"], b"", "app.js")

    def test_upload_while_indexing_rejected(self, session, registry):
        registry.set_state(session["session_id"], INDEXING)
        with pytest.raises(ValidationError) as exc:
            commit_upload(session["session_id"], session["user_id"], b"const a = 1;", "app.js")
        assert exc.value.code == ErrorCode.INVALID_STATE

    def test_upload_to_foreign_session(self, session, admin):
        with pytest.raises(AuthError):
            commit_upload(session["session_id"], admin["user_id"], b"const a = 1;", "app.js")

    def test_session_file_quota(self, session, monkeypatch):
        monkeypatch.setattr(settings.sessions.quotas["basic"], "max_files_per_session", 1)
        sid, uid = session["session_id"], session["user_id"]
        commit_upload(sid, uid, b"const a = 1;", "a.js")
        # replacing an existing path does not count as a new file
        commit_upload(sid, uid, b"const a = 3;", "a.js")
        with pytest.raises(QuotaError) as exc:
            commit_upload(sid, uid, b"const b = 2;", "b.js")
        assert exc.value.code == ErrorCode.TOO_MANY_FILES

    def test_files_to_index_and_status(self, session):
        sid, uid = session["session_id"], session["user_id"]
        ids = commit_upload(sid, uid, _zip([("a.js", "let a = 1;"), ("b.js", "let b = 1;")]), "p.zip")["fileIds"]
        set_file_status(ids[0], "indexed", detection={"dialect": "javascript", "confidence": 0.9})
        assert [f.file_id for f in files_to_index(sid)] == [ids[1]]
        assert len(files_to_index(sid, include_indexed=True)) == 2
        row = get_file(ids[0])
        assert row.detected_dialect == "javascript"
