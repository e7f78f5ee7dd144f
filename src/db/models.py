"""
SQLModel table definitions for the migration service.

Design rules for SQLModel compatibility:
  - primary_key=True and foreign_key="..." must be set in Field() only,
    never combined with sa_column (SQLModel raises RuntimeError otherwise).
  - JSON list/dict columns stay as TEXT with Python-side serialization
    so SQLite and PostgreSQL (JSONB swap) are both supported transparently.
  - A session owns its uploaded files, chunks and migration records;
    cascade="all, delete-orphan" makes session deletion a hard delete.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, Float, Index, Integer, Text, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def _now_iso() -> str:
    return datetime.now().isoformat()


def _now_ts() -> float:
    return time.time()


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


# ──────────────────────────────────────────────────────────────────────────────
# 1. Users
# ──────────────────────────────────────────────────────────────────────────────

class UserAccount(SQLModel, table=True):
    __tablename__ = "user_accounts"

    user_id: str = Field(primary_key=True)
    password_hash: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    role: str = Field(default="basic", sa_column=Column(Text, nullable=False, server_default="basic"))
    is_active: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default="1"))
    created_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))
    updated_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))


# ──────────────────────────────────────────────────────────────────────────────
# 2. Sessions + uploaded files
# ──────────────────────────────────────────────────────────────────────────────

class MigrationSession(SQLModel, table=True):
    __tablename__ = "migration_sessions"
    __table_args__ = (
        Index("idx_migration_sessions_user_state", "user_id", "state"),
        Index("idx_migration_sessions_expires_at", "expires_at"),
    )

    session_id: str = Field(primary_key=True)
    user_id: str = Field(sa_column=Column(Text, nullable=False))
    name: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    state: str = Field(default="collecting", sa_column=Column(Text, nullable=False, server_default="collecting"))
    settings_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    updated_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    expires_at: float = Field(default=0.0, sa_column=Column(Float, nullable=False))

    files: List["UploadedFile"] = Relationship(
        back_populates="session",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    chunks: List["CodeChunkRow"] = Relationship(
        back_populates="session",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )
    records: List["MigrationRecordRow"] = Relationship(
        back_populates="session",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )

    def get_settings(self) -> Dict[str, Any]:
        return _loads(self.settings_json, {})

    def to_dict(self) -> Dict[str, Any]:
        d = self.model_dump()
        d["settings"] = self.get_settings()
        d.pop("settings_json", None)
        return d


class UploadedFile(SQLModel, table=True):
    __tablename__ = "uploaded_files"
    __table_args__ = (
        UniqueConstraint("session_id", "logical_path", name="uq_uploaded_files_session_path"),
    )

    file_id: str = Field(primary_key=True)
    session_id: str = Field(foreign_key="migration_sessions.session_id", index=True)
    logical_path: str = Field(sa_column=Column(Text, nullable=False))
    bytes_ref: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    size_bytes: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    content_hash: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    detected_dialect: str = Field(default="unknown", sa_column=Column(Text, nullable=False, server_default="unknown"))
    detection_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    status: str = Field(default="pending", sa_column=Column(Text, nullable=False, server_default="pending"))
    error: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))

    session: Optional[MigrationSession] = Relationship(back_populates="files")

    def to_dict(self) -> Dict[str, Any]:
        d = self.model_dump()
        d["detection"] = _loads(self.detection_json, {})
        d.pop("detection_json", None)
        return d


# ──────────────────────────────────────────────────────────────────────────────
# 3. Code chunks (+ embedding)
# ──────────────────────────────────────────────────────────────────────────────

class CodeChunkRow(SQLModel, table=True):
    __tablename__ = "code_chunks"
    __table_args__ = (
        Index("idx_code_chunks_session_path_line", "session_id", "logical_path", "start_line"),
    )

    chunk_id: str = Field(primary_key=True)
    session_id: str = Field(foreign_key="migration_sessions.session_id")
    file_id: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    logical_path: str = Field(sa_column=Column(Text, nullable=False))
    kind: str = Field(sa_column=Column(Text, nullable=False))
    name: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    start_line: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    end_line: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    start_byte: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    end_byte: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    code: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    dialect: str = Field(default="unknown", sa_column=Column(Text, nullable=False, server_default="unknown"))
    complexity: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default="1"))
    is_async: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    is_static: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    visibility: str = Field(default="public", sa_column=Column(Text, nullable=False, server_default="public"))
    parameters_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    comments_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    tags_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    embedding_json: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    embedding_model: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    embedded_at: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))
    status: str = Field(default="pending-embedding", sa_column=Column(Text, nullable=False, server_default="pending-embedding"))
    updated_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))

    session: Optional[MigrationSession] = Relationship(back_populates="chunks")

    def get_embedding(self) -> Optional[List[float]]:
        return _loads(self.embedding_json, None)


# ──────────────────────────────────────────────────────────────────────────────
# 4. Jobs + append-only events
# ──────────────────────────────────────────────────────────────────────────────

class JobRecord(SQLModel, table=True):
    """Durable mirror of a queue job, the source for status and history reads."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_session_created", "session_id", "created_at"),
        Index("idx_jobs_status", "status"),
    )

    job_id: str = Field(primary_key=True)
    session_id: str = Field(sa_column=Column(Text, nullable=False))
    user_id: str = Field(sa_column=Column(Text, nullable=False))
    kind: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default="queued", sa_column=Column(Text, nullable=False, server_default="queued"))
    phase: str = Field(default="queued", sa_column=Column(Text, nullable=False, server_default="queued"))
    progress: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    current_item: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    attempt: int = Field(default=1, sa_column=Column(Integer, nullable=False, server_default="1"))
    max_attempts: int = Field(default=3, sa_column=Column(Integer, nullable=False, server_default="3"))
    next_retry_at: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))
    request_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    result_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    errors_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    warnings_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    updated_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))
    started_at: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))
    finished_at: Optional[float] = Field(default=None, sa_column=Column(Float, nullable=True))

    events: List["JobEvent"] = Relationship(
        back_populates="job",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"
    __table_args__ = (
        Index("idx_job_events_job_id_id", "job_id", "id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="jobs.job_id")
    event: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))

    job: Optional[JobRecord] = Relationship(back_populates="events")


# ──────────────────────────────────────────────────────────────────────────────
# 5. Migration records (immutable audit of completed transform jobs)
# ──────────────────────────────────────────────────────────────────────────────

class MigrationRecordRow(SQLModel, table=True):
    __tablename__ = "migration_records"
    __table_args__ = (
        Index("idx_migration_records_session_created", "session_id", "created_at"),
    )

    migration_id: str = Field(primary_key=True)
    session_id: str = Field(foreign_key="migration_sessions.session_id")
    job_id: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    user_id: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    command: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    target_dialect: str = Field(sa_column=Column(Text, nullable=False))
    per_file_json: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    validation_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    plan_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    statistics_json: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    created_at: float = Field(default_factory=_now_ts, sa_column=Column(Float, nullable=False))

    session: Optional[MigrationSession] = Relationship(back_populates="records")


# ──────────────────────────────────────────────────────────────────────────────
# 6. Auth  (JWT token revocation list)
# ──────────────────────────────────────────────────────────────────────────────

class RevokedToken(SQLModel, table=True):
    """SHA-256 hashes of explicitly revoked JWT tokens.

    Rows whose `expires_at` is in the past can be safely purged.
    """

    __tablename__ = "revoked_tokens"
    __table_args__ = (
        Index("idx_revoked_tokens_expires_at", "expires_at"),
    )

    token_hash: str = Field(sa_column=Column(Text, primary_key=True, nullable=False))
    expires_at: str = Field(sa_column=Column(Text, nullable=False))
    revoked_at: str = Field(default_factory=_now_iso, sa_column=Column(Text, nullable=False))
