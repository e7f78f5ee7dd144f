"""
API request/response Pydantic models
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ── auth ──

class LoginRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    token: str
    user_id: str
    role: str = "basic"


class CreateUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=6)
    role: str = Field("basic", description="basic | premium | admin")


class SetRoleRequest(BaseModel):
    role: str = Field(..., description="basic | premium | admin")


class UserItem(BaseModel):
    user_id: str
    role: str
    is_active: bool = True
    created_at: str = ""
    updated_at: str = ""


# ── sessions ──

class SessionCreateRequest(BaseModel):
    name: str = Field("", max_length=200)
    settings: Dict[str, Any] = Field(default_factory=dict, description="Free-form per-session preferences")


class SessionItem(BaseModel):
    session_id: str
    user_id: str
    name: str = ""
    state: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    updated_at: float
    expires_at: float


class SessionListResponse(BaseModel):
    items: List[SessionItem]
    page: int
    page_size: int
    total: int


class UploadedFileItem(BaseModel):
    file_id: str
    session_id: str
    logical_path: str
    size_bytes: int
    content_hash: str = ""
    detected_dialect: str = "unknown"
    detection: Dict[str, Any] = Field(default_factory=dict)
    status: str
    error: str = ""
    created_at: float = 0.0


class UploadResponse(BaseModel):
    fileIds: List[str]
    warnings: List[str] = Field(default_factory=list)
    stats: Dict[str, Any] = Field(default_factory=dict)
    indexJobId: Optional[str] = Field(None, description="Set when auto_index queued an index job")


# ── migrations ──

class MigrationOptionsModel(BaseModel):
    preserve_data: bool = True
    generate_types: bool = False
    add_validation: bool = False
    include_dependencies: bool = True
    include_related_files: bool = True
    similarity_threshold: Optional[float] = Field(None, description="0-1; defaults to search.similarity_threshold")
    top_k: Optional[int] = Field(None, description="1-100; defaults to search.top_k")
    kinds: Optional[List[str]] = Field(None, description="Restrict candidates to these chunk kinds")
    source_dialect: Optional[str] = Field(None, description="Restrict candidates to this source dialect")


class IndexRequest(BaseModel):
    full: bool = Field(False, description="Re-process every file, not only pending/failed ones")


class TransformRequest(BaseModel):
    command: str = Field(..., description="Natural-language migration instruction")
    target_dialect: str = Field(..., description="One of GET /migrations/dialects")
    options: MigrationOptionsModel = Field(default_factory=MigrationOptionsModel)


class JobAccepted(BaseModel):
    job_id: str
    kind: str
    status: str
    deduplicated: bool = False


class DetectRequest(BaseModel):
    path: str = Field(..., min_length=1, description="File name or logical path")
    content: str = Field("", description="File content sample")


class DialectItem(BaseModel):
    value: str
    label: str


# ── jobs ──

class JobStatusResponse(BaseModel):
    job_id: str
    kind: str
    status: str
    progressPercent: int
    phase: str
    currentItem: str = ""
    attempt: int = 1
    maxAttempts: int = 3
    nextRetryAt: Optional[float] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    cancelRequested: bool = False
    createdAt: Optional[float] = None
    startedAt: Optional[float] = None
    finishedAt: Optional[float] = None
    result: Optional[Dict[str, Any]] = None


class JobEventItem(BaseModel):
    id: int
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    at: float


class QueueStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
