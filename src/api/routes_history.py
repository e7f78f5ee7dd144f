"""
History API: migration records per session, record detail with per-file
output, session job list and chunk statistics.
"""

from fastapi import APIRouter, Depends, Query

from src.api.routes_auth import get_current_user
from src.core.errors import AuthError
from src.history.store import get_history_store, get_progress_store
from src.indexing.chunk_store import get_chunk_store
from src.sessions.registry import get_session_registry

router = APIRouter(tags=["history"])


@router.get("/sessions/{session_id}/history")
def session_history(
    session_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
) -> dict:
    """Newest first; per-file payloads are listed by path only."""
    get_session_registry().assert_ownership(session_id, user_id)
    return get_history_store().history_for(session_id, page=page, page_size=page_size)


@router.get("/history/{migration_id}")
def migration_detail(migration_id: str, user_id: str = Depends(get_current_user)) -> dict:
    record = get_history_store().detail(migration_id)
    if record["user_id"] != user_id:
        raise AuthError.forbidden("Migration record belongs to another user")
    return record


@router.get("/sessions/{session_id}/jobs")
def session_jobs(
    session_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
) -> dict:
    get_session_registry().assert_ownership(session_id, user_id)
    return get_progress_store().jobs_for_session(session_id, page=page, page_size=page_size)


@router.get("/sessions/{session_id}/chunks/statistics")
def chunk_statistics(session_id: str, user_id: str = Depends(get_current_user)) -> dict:
    get_session_registry().assert_ownership(session_id, user_id)
    return get_chunk_store().statistics(session_id)
