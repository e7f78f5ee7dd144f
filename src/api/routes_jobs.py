"""
Jobs API: status polling, event log, cancel/pause/resume and queue stats.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from src.api.routes_auth import get_current_admin, get_current_user
from src.api.schemas import JobEventItem, JobStatusResponse, QueueStatsResponse
from src.core.errors import AuthError, NotFoundError
from src.history.store import get_progress_store
from src.tasks.redis_queue import get_job_queue

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _owned_job(job_id: str, user_id: str) -> Dict[str, Any]:
    """Live state when Redis still holds it, else the durable mirror."""
    state = get_job_queue().get_state(job_id)
    if state is not None:
        job = state.to_dict()
        job["snapshot"] = state.snapshot()
    else:
        job = get_progress_store().get_job(job_id)
        if job is None:
            raise NotFoundError("job", job_id)
        job["snapshot"] = get_progress_store().snapshot(job_id)
    if job["user_id"] != user_id:
        raise AuthError.forbidden("Job belongs to another user")
    return job


@router.get("/stats", response_model=QueueStatsResponse)
def queue_stats(_admin_id: str = Depends(get_current_admin)) -> QueueStatsResponse:
    return QueueStatsResponse(**get_job_queue().stats())


@router.get("/{job_id}", response_model=JobStatusResponse)
def job_status(job_id: str, user_id: str = Depends(get_current_user)) -> JobStatusResponse:
    """{status, progressPercent, phase, errors, warnings} plus the result once finished."""
    job = _owned_job(job_id, user_id)
    return JobStatusResponse(**job["snapshot"], result=job.get("result") or None)


@router.get("/{job_id}/events", response_model=List[JobEventItem])
def job_events(
    job_id: str,
    after_id: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=1000),
    user_id: str = Depends(get_current_user),
) -> List[JobEventItem]:
    _owned_job(job_id, user_id)
    return [JobEventItem(**e) for e in get_progress_store().events(job_id, after_id=after_id, limit=limit)]


@router.post("/{job_id}/cancel", response_model=JobStatusResponse)
def cancel_job(job_id: str, user_id: str = Depends(get_current_user)) -> JobStatusResponse:
    """Queued jobs cancel at once; running jobs stop at their next checkpoint."""
    _owned_job(job_id, user_id)
    state = get_job_queue().cancel(job_id)
    return JobStatusResponse(**state.snapshot(), result=state.result or None)


@router.post("/{job_id}/pause", response_model=JobStatusResponse)
def pause_job(job_id: str, user_id: str = Depends(get_current_user)) -> JobStatusResponse:
    _owned_job(job_id, user_id)
    return JobStatusResponse(**get_job_queue().pause(job_id).snapshot())


@router.post("/{job_id}/resume", response_model=JobStatusResponse)
def resume_job(job_id: str, user_id: str = Depends(get_current_user)) -> JobStatusResponse:
    _owned_job(job_id, user_id)
    return JobStatusResponse(**get_job_queue().resume(job_id).snapshot())
