"""
Session registry: per-user upload sessions with expiry and role quotas.

State machine (monotone): collecting -> indexing -> ready -> migrating -> ready,
ready -> indexing for a re-index, indexing -> collecting when indexing fails,
any state -> expired. Expiry is lazy: a read past expires_at marks the
session expired and answers NotFound; the sweeper hard-deletes it later.
"""

from __future__ import annotations

import json
import shutil
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from config.settings import settings
from src.auth.users import quota_for_user
from src.core.errors import AuthError, ErrorCode, NotFoundError, QuotaError, ValidationError
from src.db.engine import get_engine
from src.db.models import MigrationSession
from src.log import get_logger

logger = get_logger(__name__)

COLLECTING = "collecting"
INDEXING = "indexing"
READY = "ready"
MIGRATING = "migrating"
EXPIRED = "expired"

STATES = (COLLECTING, INDEXING, READY, MIGRATING, EXPIRED)

_TRANSITIONS = {
    COLLECTING: {INDEXING},
    INDEXING: {READY, COLLECTING},
    READY: {MIGRATING, INDEXING},
    MIGRATING: {READY},
    EXPIRED: set(),
}


def _ttl_seconds() -> float:
    return settings.sessions.ttl_ms / 1000.0


class SessionRegistry:
    """SQL-backed sessions; every read is scoped by the owning user."""

    def create(self, user_id: str, name: str = "", session_settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not user_id:
            raise AuthError.required()
        quota = quota_for_user(user_id)
        now = time.time()
        with Session(get_engine()) as db:
            active = db.exec(
                select(func.count())
                .select_from(MigrationSession)
                .where(
                    MigrationSession.user_id == user_id,
                    MigrationSession.state != EXPIRED,
                    MigrationSession.expires_at > now,
                )
            ).one()
            if int(active) >= quota.max_active_sessions:
                raise QuotaError(
                    ErrorCode.TOO_MANY_SESSIONS,
                    f"Active session limit reached ({quota.max_active_sessions})",
                    details={"limit": quota.max_active_sessions, "active": int(active)},
                )
            row = MigrationSession(
                session_id=uuid.uuid4().hex,
                user_id=user_id,
                name=(name or "").strip()[:200],
                state=COLLECTING,
                settings_json=json.dumps(session_settings or {}, ensure_ascii=False),
                created_at=now,
                updated_at=now,
                expires_at=now + _ttl_seconds(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            out = row.to_dict()
        logger.info("[sessions] created %s for user=%s", out["session_id"], user_id)
        return out

    def _load(self, db: Session, session_id: str) -> MigrationSession:
        row = db.get(MigrationSession, session_id)
        if row is None or row.state == EXPIRED:
            raise NotFoundError("session", session_id)
        if row.expires_at <= time.time():
            row.state = EXPIRED
            row.updated_at = time.time()
            db.add(row)
            db.commit()
            logger.info("[sessions] %s expired; scheduled for deletion", session_id)
            raise NotFoundError("session", session_id)
        return row

    def get(self, session_id: str, user_id: str) -> Dict[str, Any]:
        with Session(get_engine()) as db:
            row = self._load(db, session_id)
            if row.user_id != user_id:
                raise AuthError.forbidden("Session belongs to another user")
            return row.to_dict()

    def assert_ownership(self, session_id: str, user_id: str) -> Dict[str, Any]:
        """Raise NotFound / Forbidden unless *user_id* owns a live session."""
        return self.get(session_id, user_id)

    def list(
        self,
        user_id: str,
        state: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        page = max(1, int(page))
        page_size = max(1, min(100, int(page_size)))
        now = time.time()
        conds = [
            MigrationSession.user_id == user_id,
            MigrationSession.state != EXPIRED,
            MigrationSession.expires_at > now,
        ]
        if state:
            if state not in STATES:
                raise ValidationError.invalid_field("state", f"state must be one of {', '.join(STATES)}")
            conds.append(MigrationSession.state == state)
        with Session(get_engine()) as db:
            total = db.exec(select(func.count()).select_from(MigrationSession).where(*conds)).one()
            rows = db.exec(
                select(MigrationSession)
                .where(*conds)
                .order_by(MigrationSession.updated_at.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
            items = [r.to_dict() for r in rows]
        return {"items": items, "page": page, "page_size": page_size, "total": int(total)}

    def touch(self, session_id: str) -> Dict[str, Any]:
        """Extend expiry on activity."""
        now = time.time()
        with Session(get_engine()) as db:
            row = self._load(db, session_id)
            row.expires_at = now + _ttl_seconds()
            row.updated_at = now
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.to_dict()

    def set_state(self, session_id: str, state: str) -> Dict[str, Any]:
        if state not in STATES:
            raise ValidationError.invalid_field("state", f"unknown session state {state}")
        with Session(get_engine()) as db:
            row = self._load(db, session_id)
            if state == row.state:
                return row.to_dict()
            if state != EXPIRED and state not in _TRANSITIONS.get(row.state, set()):
                raise ValidationError(
                    ErrorCode.INVALID_STATE,
                    f"Session cannot move from '{row.state}' to '{state}'",
                    details={"state": row.state, "requested": state},
                )
            previous = row.state
            row.state = state
            row.updated_at = time.time()
            db.add(row)
            db.commit()
            db.refresh(row)
            out = row.to_dict()
        logger.info("[sessions] %s %s -> %s", session_id, previous, state)
        return out

    def delete(self, session_id: str, user_id: str) -> bool:
        """Hard delete after an ownership check."""
        with Session(get_engine()) as db:
            row = db.get(MigrationSession, session_id)
            if row is None:
                raise NotFoundError("session", session_id)
            if row.user_id != user_id:
                raise AuthError.forbidden("Session belongs to another user")
        return self.purge(session_id)

    def purge(self, session_id: str) -> bool:
        """Remove a session with its files, chunks, vectors, jobs, records and upload dir."""
        from src.history.store import get_progress_store
        from src.indexing.chunk_store import get_chunk_store

        get_chunk_store().delete_session(session_id)
        get_progress_store().delete_for_session(session_id)
        with Session(get_engine()) as db:
            row = db.get(MigrationSession, session_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        shutil.rmtree(settings.path.uploads / session_id, ignore_errors=True)
        logger.info("[sessions] %s deleted", session_id)
        return True

    def sweep_expired(self, now: Optional[float] = None) -> int:
        """Hard-delete every expired session; returns how many were removed."""
        now = time.time() if now is None else now
        with Session(get_engine()) as db:
            ids: List[str] = list(db.exec(
                select(MigrationSession.session_id).where(
                    (MigrationSession.state == EXPIRED) | (MigrationSession.expires_at <= now)
                )
            ).all())
        removed = 0
        for sid in ids:
            if self.purge(sid):
                removed += 1
        if removed:
            logger.info("[sessions] sweeper removed %d expired session(s)", removed)
        return removed


_registry: Optional[SessionRegistry] = None


def get_session_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry()
    return _registry
