"""
HTTP surface through TestClient: auth, sessions, upload, index/transform
submission, job polling and history. Jobs are drained on the test thread.
"""

import pytest

from conftest import SAMPLE_JS


@pytest.fixture
def admin_headers(admin):
    from src.auth.session import create_token
    return {"Authorization": f"Bearer {create_token(admin['user_id'], role='admin')}"}


def _create_session(client, headers, name="shop"):
    resp = client.post("/sessions", json={"name": name}, headers=headers)
    assert resp.status_code == 201
    return resp.json()["session_id"]


def _upload(client, headers, sid, data=SAMPLE_JS, filename="users.js", auto_index=True):
    return client.post(
        f"/sessions/{sid}/files",
        files={"file": (filename, data, "text/javascript")},
        data={"auto_index": "true" if auto_index else "false"},
        headers=headers,
    )


TRANSFORM = {
    "command": "Convert this module to TypeScript with explicit types",
    "target_dialect": "typescript",
    "options": {"similarity_threshold": 0.0, "source_dialect": "javascript"},
}


# ── auth ──

class TestAuth:
    def test_login_and_me(self, client, user):
        resp = client.post("/auth/login", json={"user_id": "alice", "password": "secret-pass"})
        assert resp.status_code == 200
        token = resp.json()["token"]
        me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.json()["user_id"] == "alice"
        assert me.json()["role"] == "basic"

    def test_bad_password(self, client, user):
        resp = client.post("/auth/login", json={"user_id": "alice", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "INVALID_TOKEN"

    def test_token_required(self, client):
        resp = client.get("/sessions")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_REQUIRED"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_logout_revokes(self, client, auth_headers):
        assert client.post("/auth/logout", headers=auth_headers).json() == {"revoked": True}
        assert client.get("/auth/me", headers=auth_headers).status_code == 401

    def test_admin_only_routes(self, client, auth_headers, admin_headers):
        assert client.get("/jobs/stats", headers=auth_headers).status_code == 403
        assert client.get("/jobs/stats", headers=admin_headers).json() == {
            "waiting": 0, "active": 0, "completed": 0, "failed": 0,
        }
        resp = client.post("/admin/users", json={"user_id": "bob", "password": "hunter22"}, headers=admin_headers)
        assert resp.json()["role"] == "basic"


# ── sessions ──

class TestSessions:
    def test_crud(self, client, auth_headers):
        sid = _create_session(client, auth_headers)
        got = client.get(f"/sessions/{sid}", headers=auth_headers).json()
        assert got["state"] == "collecting"
        listed = client.get("/sessions", headers=auth_headers).json()
        assert [s["session_id"] for s in listed["items"]] == [sid]
        touched = client.post(f"/sessions/{sid}/touch", headers=auth_headers).json()
        assert touched["expires_at"] >= got["expires_at"]
        assert client.delete(f"/sessions/{sid}", headers=auth_headers).json() == {"deleted": True}
        assert client.get(f"/sessions/{sid}", headers=auth_headers).status_code == 404

    def test_other_users_session_forbidden(self, client, auth_headers, admin_headers):
        sid = _create_session(client, auth_headers)
        resp = client.get(f"/sessions/{sid}", headers=admin_headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_invalid_state_filter(self, client, auth_headers):
        resp = client.get("/sessions", params={"state": "bogus"}, headers=auth_headers)
        assert resp.status_code == 422


# ── upload, index, transform ──

class TestFlow:
    def test_upload_index_transform_history(self, client, auth_headers, run_jobs):
        sid = _create_session(client, auth_headers)
        up = _upload(client, auth_headers, sid)
        assert up.status_code == 201
        body = up.json()
        assert body["stats"]["accepted"] == 1
        assert body["indexJobId"]

        run_jobs()
        index_job = client.get(f"/jobs/{body['indexJobId']}", headers=auth_headers).json()
        assert index_job["status"] == "completed"
        assert index_job["progressPercent"] == 100
        assert client.get(f"/sessions/{sid}", headers=auth_headers).json()["state"] == "ready"
        files = client.get(f"/sessions/{sid}/files", headers=auth_headers).json()
        assert files[0]["detected_dialect"] == "javascript"
        stats = client.get(f"/sessions/{sid}/chunks/statistics", headers=auth_headers).json()
        assert stats["totalChunks"] > 0

        accepted = client.post(f"/migrations/sessions/{sid}/transform", json=TRANSFORM, headers=auth_headers)
        assert accepted.status_code == 202
        job_id = accepted.json()["job_id"]
        again = client.post(f"/migrations/sessions/{sid}/transform", json=TRANSFORM, headers=auth_headers).json()
        assert again["deduplicated"]
        assert again["job_id"] == job_id

        run_jobs()
        job = client.get(f"/jobs/{job_id}", headers=auth_headers).json()
        assert job["status"] == "completed"
        migration_id = job["result"]["migrationId"]
        assert job["result"]["files"] == [{"logicalPath": "users.js", "migratedPath": "users.ts"}]

        events = [e["event"] for e in client.get(f"/jobs/{job_id}/events", headers=auth_headers).json()]
        assert events[0] == "enqueued"
        assert events[-1] == "completed"
        assert "stage" in events

        history = client.get(f"/sessions/{sid}/history", headers=auth_headers).json()
        assert history["total"] == 1
        assert history["items"][0]["migration_id"] == migration_id
        detail = client.get(f"/history/{migration_id}", headers=auth_headers).json()
        assert detail["per_file"][0]["migratedBytes"] == SAMPLE_JS.decode()

        jobs = client.get(f"/sessions/{sid}/jobs", headers=auth_headers).json()
        assert jobs["total"] == 2

    def test_manual_index(self, client, auth_headers, run_jobs):
        sid = _create_session(client, auth_headers)
        up = _upload(client, auth_headers, sid, auto_index=False).json()
        assert up["indexJobId"] is None
        resp = client.post(f"/migrations/sessions/{sid}/index", json={}, headers=auth_headers)
        assert resp.status_code == 202
        assert resp.json()["kind"] == "index"
        [job] = run_jobs()
        assert job.status.value == "completed"

    def test_traversal_upload_rejected(self, client, auth_headers):
        import io
        import zipfile

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("../../etc/passwd.js", "x")
        sid = _create_session(client, auth_headers)
        resp = _upload(client, auth_headers, sid, data=buf.getvalue(), filename="evil.zip")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "PATH_TRAVERSAL"

    def test_upload_with_nothing_allowed_still_indexes(self, client, auth_headers, run_jobs):
        import io
        import zipfile

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("blob.bin", b"\x00\x01")
        sid = _create_session(client, auth_headers)
        body = _upload(client, auth_headers, sid, data=buf.getvalue(), filename="assets.zip").json()
        assert body["stats"]["accepted"] == 0
        assert body["indexJobId"]
        [job] = run_jobs()
        assert job.status.value == "completed"
        assert client.get(f"/sessions/{sid}", headers=auth_headers).json()["state"] == "ready"

    def test_transform_before_index(self, client, auth_headers):
        sid = _create_session(client, auth_headers)
        resp = client.post(f"/migrations/sessions/{sid}/transform", json=TRANSFORM, headers=auth_headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_STATE"

    def test_dangerous_command(self, client, auth_headers):
        sid = _create_session(client, auth_headers)
        body = dict(TRANSFORM, command="migrate it and then rm -rf / for good measure")
        resp = client.post(f"/migrations/sessions/{sid}/transform", json=body, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "DANGEROUS_COMMAND"
        assert resp.json()["error"]["hints"]

    def test_missing_target_is_422(self, client, auth_headers):
        sid = _create_session(client, auth_headers)
        resp = client.post(f"/migrations/sessions/{sid}/transform", json={"command": "x" * 20}, headers=auth_headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "INVALID_FIELD"


# ── jobs ──

class TestJobs:
    def test_cancel_queued_job(self, client, auth_headers):
        sid = _create_session(client, auth_headers)
        job_id = _upload(client, auth_headers, sid).json()["indexJobId"]
        resp = client.post(f"/jobs/{job_id}/cancel", headers=auth_headers)
        assert resp.json()["status"] == "cancelled"

    def test_pause_resume(self, client, auth_headers):
        sid = _create_session(client, auth_headers)
        job_id = _upload(client, auth_headers, sid).json()["indexJobId"]
        assert client.post(f"/jobs/{job_id}/pause", headers=auth_headers).json()["status"] == "paused"
        assert client.post(f"/jobs/{job_id}/resume", headers=auth_headers).json()["status"] == "queued"

    def test_foreign_job_forbidden(self, client, auth_headers, admin_headers):
        sid = _create_session(client, auth_headers)
        job_id = _upload(client, auth_headers, sid).json()["indexJobId"]
        assert client.get(f"/jobs/{job_id}", headers=admin_headers).status_code == 403

    def test_unknown_job(self, client, auth_headers):
        resp = client.get("/jobs/nope", headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"


# ── vocabulary ──

def test_dialects_are_public(client):
    items = client.get("/migrations/dialects").json()
    assert {"value": "typescript", "label": "TypeScript"} in items
    assert all(i["value"] != "unknown" for i in items)


def test_detect_preview(client, auth_headers):
    resp = client.post("/migrations/detect", json={"path": "legacy.py", "content": "print 'hello'\n"}, headers=auth_headers)
    assert resp.json()["dialect"] == "python2"


def test_recipes(client):
    keys = [r["key"] for r in client.get("/migrations/recipes", params={"source": "python2", "target": "python3"}).json()]
    assert keys == ["python2-print-to-python3", "python2-unicode-to-python3"]
    assert client.get("/migrations/recipes", params={"source": "cobol", "target": "python3"}).status_code == 422


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
