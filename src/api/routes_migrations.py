"""
Migrations API: trigger indexing, request a transform, preview dialect
detection and list the target vocabulary.
"""

from typing import List

from fastapi import APIRouter, Depends

from config.settings import settings
from src.api.routes_auth import get_current_user
from src.api.schemas import DetectRequest, DialectItem, IndexRequest, JobAccepted, TransformRequest
from src.core.errors import ValidationError
from src.core.models import MigrationOptions, MigrationRequest
from src.generation.recipes import available_recipes
from src.parser.dialect import detect, parse_target, supported_dialects
from src.pipelines.submit import accepted, submit_index, submit_transform

router = APIRouter(prefix="/migrations", tags=["migrations"])


def _options(body: TransformRequest) -> MigrationOptions:
    raw = body.options.model_dump()
    if raw.get("similarity_threshold") is None:
        raw["similarity_threshold"] = settings.search.similarity_threshold
    if raw.get("top_k") is None:
        raw["top_k"] = settings.search.top_k
    return MigrationOptions.from_dict(raw)


@router.post("/sessions/{session_id}/index", response_model=JobAccepted, status_code=202)
def trigger_index(
    session_id: str,
    body: IndexRequest = IndexRequest(),
    user_id: str = Depends(get_current_user),
) -> JobAccepted:
    state, deduplicated = submit_index(session_id, user_id, full=body.full)
    return JobAccepted(**accepted(state, deduplicated))


@router.post("/sessions/{session_id}/transform", response_model=JobAccepted, status_code=202)
def request_transform(
    session_id: str,
    body: TransformRequest,
    user_id: str = Depends(get_current_user),
) -> JobAccepted:
    """Validate the command and queue a transform job; poll GET /jobs/{job_id}."""
    request = MigrationRequest(
        session_id=session_id,
        user_id=user_id,
        command=body.command,
        target_dialect=body.target_dialect,
        options=_options(body),
    )
    state, deduplicated = submit_transform(request)
    return JobAccepted(**accepted(state, deduplicated))


@router.post("/detect")
def detect_preview(body: DetectRequest, _user_id: str = Depends(get_current_user)) -> dict:
    """Run dialect detection on a sample without storing anything."""
    return detect(body.path, body.content).to_dict()


@router.get("/dialects", response_model=List[DialectItem])
def list_dialects() -> List[DialectItem]:
    return [DialectItem(**d) for d in supported_dialects()]


@router.get("/recipes")
def list_recipes(source: str, target: str) -> list:
    """Specialized rewrite instructions that apply between two dialects."""
    src_dialect, dst_dialect = parse_target(source), parse_target(target)
    if src_dialect is None:
        raise ValidationError.invalid_dialect(source)
    if dst_dialect is None:
        raise ValidationError.invalid_dialect(target)
    return [{"key": r.key, "name": r.name} for r in available_recipes(src_dialect, dst_dialect)]
