"""
Progress and history persistence.

ProgressStore: durable mirror of job state plus an append-only event log per job.
HistoryStore:  immutable migration records, paginated per session.

Both are SQLModel-backed and share the engine from src.db.engine; retention
follows the owning session (deleted together with it).
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from src.core.errors import NotFoundError, StoreError
from src.db.engine import get_engine
from src.db.models import JobEvent, JobRecord, MigrationRecordRow
from src.log import get_logger

logger = get_logger(__name__)


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


def _page(page: int, page_size: int) -> tuple:
    page = max(1, int(page))
    page_size = max(1, min(100, int(page_size)))
    return page, page_size, (page - 1) * page_size


# ──────────────────────────────────────────────────────────────────────────────
# Job progress
# ──────────────────────────────────────────────────────────────────────────────

class ProgressStore:
    """Mirror of queue job state in the `jobs` table + `job_events` log."""

    def save_job(self, state) -> None:
        """Upsert the job row from a JobState."""
        now = time.time()
        try:
            with Session(get_engine()) as db:
                row = db.get(JobRecord, state.job_id) or JobRecord(
                    job_id=state.job_id,
                    session_id=state.session_id,
                    user_id=state.user_id,
                    kind=state.kind.value,
                    created_at=state.created_at,
                )
                row.status = state.status.value
                row.phase = state.phase
                row.progress = int(state.progress)
                row.current_item = state.current_item
                row.attempt = state.attempt
                row.max_attempts = state.max_attempts
                row.next_retry_at = state.next_retry_at
                row.request_json = json.dumps(state.request, ensure_ascii=False, default=str)
                row.result_json = json.dumps(state.result, ensure_ascii=False, default=str)
                row.errors_json = json.dumps(state.errors, ensure_ascii=False, default=str)
                row.warnings_json = json.dumps(state.warnings, ensure_ascii=False, default=str)
                row.started_at = state.started_at
                row.finished_at = state.finished_at
                row.updated_at = now
                db.add(row)
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"save job {state.job_id} failed: {e}") from e

    def record_event(self, job_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Append one lifecycle event; never updates existing rows."""
        try:
            with Session(get_engine()) as db:
                db.add(JobEvent(job_id=job_id, event=event, data_json=json.dumps(data or {}, ensure_ascii=False, default=str)))
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"record event {event} for {job_id} failed: {e}") from e

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with Session(get_engine()) as db:
            row = db.get(JobRecord, job_id)
            if row is None:
                return None
            return {
                "job_id": row.job_id,
                "session_id": row.session_id,
                "user_id": row.user_id,
                "kind": row.kind,
                "status": row.status,
                "phase": row.phase,
                "progress": row.progress,
                "current_item": row.current_item,
                "attempt": row.attempt,
                "max_attempts": row.max_attempts,
                "next_retry_at": row.next_retry_at,
                "request": _loads(row.request_json, {}),
                "result": _loads(row.result_json, {}),
                "errors": _loads(row.errors_json, []),
                "warnings": _loads(row.warnings_json, []),
                "created_at": row.created_at,
                "started_at": row.started_at,
                "finished_at": row.finished_at,
            }

    def snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.get_job(job_id)
        if job is None:
            return None
        return {
            "job_id": job["job_id"],
            "kind": job["kind"],
            "status": job["status"],
            "progressPercent": job["progress"],
            "phase": job["phase"],
            "currentItem": job["current_item"],
            "attempt": job["attempt"],
            "maxAttempts": job["max_attempts"],
            "nextRetryAt": job["next_retry_at"],
            "errors": job["errors"],
            "warnings": job["warnings"],
            "cancelRequested": False,
            "createdAt": job["created_at"],
            "startedAt": job["started_at"],
            "finishedAt": job["finished_at"],
        }

    def events(self, job_id: str, after_id: int = 0, limit: int = 200) -> List[Dict[str, Any]]:
        with Session(get_engine()) as db:
            rows = db.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id, JobEvent.id > after_id)
                .order_by(JobEvent.id)
                .limit(limit)
            ).all()
        return [
            {"id": r.id, "event": r.event, "data": _loads(r.data_json, {}), "at": r.created_at}
            for r in rows
        ]

    def jobs_for_session(self, session_id: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        page, page_size, offset = _page(page, page_size)
        with Session(get_engine()) as db:
            total = db.exec(select(func.count()).select_from(JobRecord).where(JobRecord.session_id == session_id)).one()
            rows = db.exec(
                select(JobRecord.job_id)
                .where(JobRecord.session_id == session_id)
                .order_by(JobRecord.created_at.desc())
                .offset(offset)
                .limit(page_size)
            ).all()
        items = [self.snapshot(jid) for jid in rows]
        return {"items": [i for i in items if i], "page": page, "page_size": page_size, "total": int(total)}

    def delete_for_session(self, session_id: str) -> int:
        with Session(get_engine()) as db:
            job_ids = db.exec(select(JobRecord.job_id).where(JobRecord.session_id == session_id)).all()
            if job_ids:
                db.execute(sa_delete(JobEvent).where(JobEvent.job_id.in_(job_ids)))
                db.execute(sa_delete(JobRecord).where(JobRecord.job_id.in_(job_ids)))
            db.commit()
        return len(job_ids)


# ──────────────────────────────────────────────────────────────────────────────
# Migration history
# ──────────────────────────────────────────────────────────────────────────────

def _record_to_dict(row: MigrationRecordRow) -> Dict[str, Any]:
    return {
        "migration_id": row.migration_id,
        "session_id": row.session_id,
        "job_id": row.job_id,
        "user_id": row.user_id,
        "command": row.command,
        "target_dialect": row.target_dialect,
        "per_file": _loads(row.per_file_json, []),
        "validation": _loads(row.validation_json, {}),
        "plan": _loads(row.plan_json, {}),
        "statistics": _loads(row.statistics_json, {}),
        "created_at": row.created_at,
    }


class HistoryStore:
    """Immutable audit of completed transform jobs."""

    def save_record(
        self,
        session_id: str,
        target_dialect: str,
        per_file: List[Dict[str, Any]],
        validation: Dict[str, Any],
        plan: Dict[str, Any],
        statistics: Dict[str, Any],
        job_id: str = "",
        user_id: str = "",
        command: str = "",
        migration_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        row = MigrationRecordRow(
            migration_id=migration_id or uuid.uuid4().hex,
            session_id=session_id,
            job_id=job_id,
            user_id=user_id,
            command=command,
            target_dialect=target_dialect,
            per_file_json=json.dumps(per_file, ensure_ascii=False, default=str),
            validation_json=json.dumps(validation, ensure_ascii=False, default=str),
            plan_json=json.dumps(plan, ensure_ascii=False, default=str),
            statistics_json=json.dumps(statistics, ensure_ascii=False, default=str),
        )
        try:
            with Session(get_engine()) as db:
                db.add(row)
                db.commit()
                db.refresh(row)
                out = _record_to_dict(row)
        except IntegrityError as e:
            raise StoreError(f"migration record {row.migration_id} already exists or session is gone") from e
        except SQLAlchemyError as e:
            raise StoreError(f"save migration record failed: {e}") from e
        logger.info("[history] record %s saved for session %s", out["migration_id"], session_id)
        return out

    def history_for(self, session_id: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        """Newest first; per-file payloads omitted from list items."""
        page, page_size, offset = _page(page, page_size)
        with Session(get_engine()) as db:
            total = db.exec(
                select(func.count()).select_from(MigrationRecordRow).where(MigrationRecordRow.session_id == session_id)
            ).one()
            rows = db.exec(
                select(MigrationRecordRow)
                .where(MigrationRecordRow.session_id == session_id)
                .order_by(MigrationRecordRow.created_at.desc())
                .offset(offset)
                .limit(page_size)
            ).all()
            items = []
            for r in rows:
                d = _record_to_dict(r)
                d["files"] = [
                    {"logicalPath": f.get("logicalPath"), "migratedPath": f.get("migratedPath")}
                    for f in d.pop("per_file")
                ]
                items.append(d)
        return {"items": items, "page": page, "page_size": page_size, "total": int(total)}

    def detail(self, migration_id: str) -> Dict[str, Any]:
        with Session(get_engine()) as db:
            row = db.get(MigrationRecordRow, migration_id)
            if row is None:
                raise NotFoundError("migration", migration_id)
            return _record_to_dict(row)


_progress: Optional[ProgressStore] = None
_history: Optional[HistoryStore] = None


def get_progress_store() -> ProgressStore:
    global _progress
    if _progress is None:
        _progress = ProgressStore()
    return _progress


def get_history_store() -> HistoryStore:
    global _history
    if _history is None:
        _history = HistoryStore()
    return _history
