"""
Upload ingress: commit a blob (single file or archive) to a session.

The blob is expanded up front so a traversal or corrupt archive rejects the
whole upload before any row or byte is written. Accepted entries are stored
under data/uploads/<session_id>/<file_id> and recorded as pending
UploadedFile rows; re-uploading a logical path replaces it.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from config.settings import settings
from src.auth.users import quota_for_user
from src.core.errors import ErrorCode, QuotaError, ValidationError
from src.db.engine import get_engine
from src.db.models import UploadedFile
from src.ingest.archive import ExpansionCaps, expand
from src.log import get_logger
from src.observability import metrics
from src.sessions.registry import COLLECTING, READY, get_session_registry

logger = get_logger(__name__)

UPLOADABLE_STATES = (COLLECTING, READY)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def session_dir(session_id: str) -> Path:
    return settings.path.uploads / session_id


def read_file_bytes(row: UploadedFile) -> bytes:
    return Path(row.bytes_ref).read_bytes()


def commit_upload(
    session_id: str,
    user_id: str,
    blob: bytes,
    filename: str,
    mime: Optional[str] = None,
) -> Dict[str, Any]:
    """Returns {"fileIds", "warnings", "stats"}."""
    registry = get_session_registry()
    sess = registry.assert_ownership(session_id, user_id)
    if sess["state"] not in UPLOADABLE_STATES:
        raise ValidationError.invalid_state(sess["state"], " or ".join(UPLOADABLE_STATES))
    if not blob:
        raise ValidationError.invalid_field("file", "upload is empty")

    quota = quota_for_user(user_id)
    caps = ExpansionCaps.from_settings(quota)
    expansion = expand(blob, filename or "upload", caps, mime)

    with Session(get_engine()) as db:
        existing_paths = set(db.exec(
            select(UploadedFile.logical_path).where(UploadedFile.session_id == session_id)
        ).all())
        existing = db.exec(
            select(func.count()).select_from(UploadedFile).where(UploadedFile.session_id == session_id)
        ).one()
    new_count = sum(1 for e in expansion.entries if e.logical_path not in existing_paths)
    if int(existing) + new_count > quota.max_files_per_session:
        raise QuotaError(
            ErrorCode.TOO_MANY_FILES,
            f"Session file limit is {quota.max_files_per_session}",
            details={"limit": quota.max_files_per_session, "existing": int(existing), "incoming": new_count},
        )

    target = session_dir(session_id)
    target.mkdir(parents=True, exist_ok=True)
    file_ids: List[str] = []
    with Session(get_engine()) as db:
        for entry in expansion.entries:
            row = db.exec(
                select(UploadedFile).where(
                    UploadedFile.session_id == session_id,
                    UploadedFile.logical_path == entry.logical_path,
                )
            ).first()
            if row is None:
                row = UploadedFile(file_id=uuid.uuid4().hex, session_id=session_id, logical_path=entry.logical_path)
            path = target / row.file_id
            path.write_bytes(entry.data)
            row.bytes_ref = str(path)
            row.size_bytes = entry.size_bytes
            row.content_hash = content_hash(entry.data)
            row.status = "pending"
            row.error = ""
            row.created_at = time.time()
            db.add(row)
            file_ids.append(row.file_id)
        db.commit()

    registry.touch(session_id)
    metrics.files_ingested_total.labels(status="accepted").inc(len(file_ids))
    if expansion.skipped:
        metrics.files_ingested_total.labels(status="skipped").inc(len(expansion.skipped))
    logger.info(
        "[upload] session=%s file=%s accepted=%d skipped=%d",
        session_id, filename, len(file_ids), len(expansion.skipped),
    )
    return {
        "fileIds": file_ids,
        "warnings": list(expansion.warnings),
        "stats": {
            "accepted": len(file_ids),
            "skipped": len(expansion.skipped),
            "totalBytes": expansion.total_bytes,
        },
    }


def files_to_index(session_id: str, include_indexed: bool = False) -> List[UploadedFile]:
    """Pending (or, for a full re-index, every) file of a session in logical_path order."""
    with Session(get_engine()) as db:
        stmt = select(UploadedFile).where(UploadedFile.session_id == session_id)
        if not include_indexed:
            stmt = stmt.where(UploadedFile.status.in_(("pending", "failed")))
        return list(db.exec(stmt.order_by(UploadedFile.logical_path)).all())


def get_file(file_id: str) -> Optional[UploadedFile]:
    with Session(get_engine()) as db:
        return db.get(UploadedFile, file_id)


def set_file_status(
    file_id: str,
    status: str,
    error: str = "",
    detection: Optional[Dict[str, Any]] = None,
) -> None:
    with Session(get_engine()) as db:
        row = db.get(UploadedFile, file_id)
        if row is None:
            return
        row.status = status
        row.error = error
        if detection is not None:
            row.detected_dialect = detection.get("dialect") or "unknown"
            row.detection_json = json.dumps(detection, ensure_ascii=False)
        db.add(row)
        db.commit()
    metrics.files_ingested_total.labels(status=status).inc()


def list_files(session_id: str) -> List[Dict[str, Any]]:
    with Session(get_engine()) as db:
        rows = db.exec(
            select(UploadedFile)
            .where(UploadedFile.session_id == session_id)
            .order_by(UploadedFile.logical_path)
        ).all()
        return [r.to_dict() for r in rows]
