"""
Sessions API: create/list/get/touch/delete sessions and the upload ingress.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from src.api.routes_auth import get_current_user
from src.api.schemas import (
    SessionCreateRequest,
    SessionItem,
    SessionListResponse,
    UploadedFileItem,
    UploadResponse,
)
from src.ingest import upload
from src.log import get_logger
from src.pipelines.submit import submit_index
from src.sessions.registry import COLLECTING, get_session_registry

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post("", response_model=SessionItem, status_code=201)
def create_session(body: SessionCreateRequest, user_id: str = Depends(get_current_user)) -> SessionItem:
    return SessionItem(**get_session_registry().create(user_id, name=body.name, session_settings=body.settings))


@router.get("", response_model=SessionListResponse)
def list_sessions(
    state: Optional[str] = Query(None, description="collecting | indexing | ready | migrating"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user),
) -> SessionListResponse:
    return SessionListResponse(**get_session_registry().list(user_id, state=state, page=page, page_size=page_size))


@router.get("/{session_id}", response_model=SessionItem)
def get_session(session_id: str, user_id: str = Depends(get_current_user)) -> SessionItem:
    return SessionItem(**get_session_registry().get(session_id, user_id))


@router.post("/{session_id}/touch", response_model=SessionItem)
def touch_session(session_id: str, user_id: str = Depends(get_current_user)) -> SessionItem:
    registry = get_session_registry()
    registry.assert_ownership(session_id, user_id)
    return SessionItem(**registry.touch(session_id))


@router.delete("/{session_id}")
def delete_session(session_id: str, user_id: str = Depends(get_current_user)) -> dict:
    """Delete the session with its files, chunks, embeddings, jobs and history."""
    return {"deleted": get_session_registry().delete(session_id, user_id)}


# ── upload ingress ──

@router.post("/{session_id}/files", response_model=UploadResponse, status_code=201)
async def upload_file(
    session_id: str,
    file: UploadFile = File(...),
    auto_index: bool = Form(True),
    user_id: str = Depends(get_current_user),
) -> UploadResponse:
    """
    Commit one file or archive to the session. With auto_index (default) an
    index job is queued for the files still pending.
    """
    blob = await file.read()
    out = upload.commit_upload(session_id, user_id, blob, file.filename or "upload", file.content_type)
    job_id = None
    if auto_index and (out["fileIds"] or get_session_registry().get(session_id, user_id)["state"] == COLLECTING):
        state, _ = submit_index(session_id, user_id)
        job_id = state.job_id
    return UploadResponse(**out, indexJobId=job_id)


@router.get("/{session_id}/files", response_model=List[UploadedFileItem])
def list_files(session_id: str, user_id: str = Depends(get_current_user)) -> List[UploadedFileItem]:
    get_session_registry().assert_ownership(session_id, user_id)
    return [UploadedFileItem(**f) for f in upload.list_files(session_id)]
