"""
Producer side of the pipeline: turn an upload commit or a migration request
into a queued job. Requests are validated here so a bad command is rejected
synchronously instead of failing later on a worker.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, Tuple

from src.core.errors import ErrorCode, ValidationError
from src.core.models import MigrationRequest
from src.ingest import upload
from src.log import get_logger
from src.pipelines.validation import validate_request
from src.sessions.registry import COLLECTING, MIGRATING, READY, get_session_registry
from src.tasks.redis_queue import get_job_queue
from src.tasks.task_state import JobKind, JobState

logger = get_logger(__name__)


def index_fingerprint(session_id: str, full: bool = False) -> str:
    """Same pending file set and mode -> same fingerprint."""
    rows = upload.files_to_index(session_id, include_indexed=full)
    h = hashlib.sha256(f"full={bool(full)}".encode("utf-8"))
    for row in rows:
        h.update(f"|{row.file_id}:{row.content_hash}".encode("utf-8"))
    return h.hexdigest()[:32]


def submit_index(session_id: str, user_id: str, full: bool = False) -> Tuple[JobState, bool]:
    session = get_session_registry().assert_ownership(session_id, user_id)
    if session["state"] not in (COLLECTING, READY):
        raise ValidationError.invalid_state(session["state"], f"{COLLECTING} or {READY}")
    # a collecting session may index an empty file set so it still reaches ready
    if session["state"] == READY and not upload.files_to_index(session_id, include_indexed=full):
        raise ValidationError(
            ErrorCode.INVALID_STATE,
            "No files waiting to be indexed; upload files or request a full re-index",
            details={"session_id": session_id},
        )
    state, deduplicated = get_job_queue().enqueue(
        JobKind.index,
        session_id,
        user_id,
        {"session_id": session_id, "user_id": user_id, "full": bool(full)},
        fingerprint=index_fingerprint(session_id, full),
    )
    return state, deduplicated


def submit_transform(request: MigrationRequest) -> Tuple[JobState, bool]:
    validate_request(request)
    session = get_session_registry().assert_ownership(request.session_id, request.user_id)
    if session["state"] not in (READY, MIGRATING):
        raise ValidationError.invalid_state(session["state"], READY)
    state, deduplicated = get_job_queue().enqueue(
        JobKind.transform,
        request.session_id,
        request.user_id,
        request.to_dict(),
        fingerprint=request.fingerprint(),
    )
    return state, deduplicated


def accepted(state: JobState, deduplicated: bool) -> Dict[str, Any]:
    return {
        "job_id": state.job_id,
        "kind": state.kind.value,
        "status": state.status.value,
        "deduplicated": deduplicated,
    }
