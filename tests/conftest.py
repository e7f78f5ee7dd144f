"""
Shared fixtures: throwaway SQLite database, fakeredis-backed job queue,
dry-run model clients and an authenticated API client.
"""

import fakeredis
import pytest
from fastapi.testclient import TestClient

from config.settings import settings
from src.core.models import Chunk, Parameter, compute_chunk_id

EMBED_DIM = 16


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Every test gets its own database, upload dir and dry-run model settings."""
    from src.db.engine import init_db, reset_engine

    monkeypatch.setenv("MIGRATE_DATABASE_URL", f"sqlite:///{tmp_path / 'migrate.db'}")
    monkeypatch.setenv("MIGRATE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr(settings.llm, "dry_run", True)
    monkeypatch.setattr(settings.embedding, "dimension", EMBED_DIM)
    monkeypatch.setattr(settings.embedding, "batch_delay_ms", 0)
    monkeypatch.setattr(settings.embedding, "base_delay_ms", 0)
    monkeypatch.setattr(settings.embedding, "max_jitter_ms", 0)
    monkeypatch.setattr(settings.transform, "concurrency", 1)

    # process-wide singletons built from the patched settings
    monkeypatch.setattr("src.llm.llm_manager._manager", None)
    monkeypatch.setattr("src.indexing.embedder._client", None)
    monkeypatch.setattr("src.pipelines.coordinator._coordinator", None)

    reset_engine()
    init_db()
    settings.path.ensure_dirs()

    from src.indexing.chunk_store import SqlChunkStore, set_chunk_store
    set_chunk_store(SqlChunkStore(dimension=EMBED_DIM))
    yield
    set_chunk_store(None)
    reset_engine()


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def queue(fake_redis):
    """JobQueue on fakeredis, mirrored to the test database."""
    from src.history.store import ProgressStore
    from src.tasks.redis_queue import JobQueue, set_job_queue

    q = JobQueue(client=fake_redis, mirror=ProgressStore())
    set_job_queue(q)
    yield q
    set_job_queue(None)


@pytest.fixture
def user():
    from src.auth.users import create_user
    return create_user("alice", "secret-pass", role="basic")


@pytest.fixture
def admin():
    from src.auth.users import create_user
    return create_user("root", "secret-pass", role="admin")


@pytest.fixture
def token(user):
    from src.auth.session import create_token
    return create_token(user["user_id"], role=user["role"])


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client(queue):
    """API client without the lifespan, so no background worker runs."""
    from src.api.server import app
    return TestClient(app)


@pytest.fixture
def session(user):
    from src.sessions.registry import get_session_registry
    return get_session_registry().create(user["user_id"], name="demo")


def drain(q):
    """Run every ready job to completion on the current thread."""
    from src.pipelines.coordinator import get_coordinator

    finished = []
    while True:
        state = q.lease()
        if state is None:
            return finished
        finished.append(get_coordinator().run(state))


@pytest.fixture
def run_jobs(queue):
    return lambda: drain(queue)


def make_chunk(
    session_id: str = "s1",
    logical_path: str = "src/app.js",
    name: str = "handler",
    start_line: int = 1,
    end_line: int = 3,
    start_byte: int = 0,
    code: str = "function handler(req) { return req.body; }",
    kind: str = "function",
    dialect: str = "javascript",
    file_id: str = "f1",
    complexity: int = 1,
    embedding=None,
    is_async: bool = False,
) -> Chunk:
    return Chunk(
        chunk_id=compute_chunk_id(session_id, logical_path, start_line, end_line, name),
        session_id=session_id,
        file_id=file_id,
        logical_path=logical_path,
        kind=kind,
        name=name,
        start_line=start_line,
        end_line=end_line,
        start_byte=start_byte,
        end_byte=start_byte + len(code.encode("utf-8")),
        code=code,
        dialect=dialect,
        complexity=complexity,
        is_async=is_async,
        parameters=[Parameter(name="req", position=0)],
        embedding=embedding,
    )


def unit(*values: float):
    """A EMBED_DIM vector with the given leading components."""
    vec = list(values) + [0.0] * (EMBED_DIM - len(values))
    return vec[:EMBED_DIM]


SAMPLE_JS = b"""import axios from 'axios';

export function fetchUsers(url) {
  if (!url) {
    return [];
  }
  return axios.get(url).then((r) => r.data);
}

class UserService {
  constructor(client) {
    this.client = client;
  }

  async load(id) {
    for (let i = 0; i < 3; i++) {
      try {
        return await this.client.get(id);
      } catch (e) {
        continue;
      }
    }
    return null;
  }
}

module.exports = { UserService };
"""

SAMPLE_PY = b'''import os
from typing import List


def list_sources(root):
    """Files under root, sorted."""
    out = []
    for name in os.listdir(root):
        if name.endswith(".py") and not name.startswith("_"):
            out.append(name)
    return sorted(out)


class Loader:
    def __init__(self, root):
        self.root = root

    async def fetch(self, name):
        return os.path.join(self.root, name)

    @staticmethod
    def _hidden(name):
        return name.startswith(".")
'''
