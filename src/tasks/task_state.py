"""
Job state model and status machine for the migration queue.
States: queued -> running -> completed | failed | cancelled; queued <-> paused;
running -> queued again when a retryable failure schedules another attempt.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class JobKind(str, Enum):
    index = "index"
    transform = "transform"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    paused = "paused"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL = (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


@dataclass
class JobState:
    job_id: str
    kind: JobKind
    status: JobStatus
    session_id: str = ""
    user_id: str = ""
    phase: str = "queued"
    progress: int = 0
    current_item: str = ""
    attempt: int = 1
    max_attempts: int = 3
    next_retry_at: Optional[float] = None
    fingerprint: str = ""
    request: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cancel_requested: bool = False
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "phase": self.phase,
            "progress": self.progress,
            "current_item": self.current_item,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "next_retry_at": self.next_retry_at,
            "fingerprint": self.fingerprint,
            "request": self.request,
            "result": self.result,
            "errors": self.errors,
            "warnings": self.warnings,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobState:
        kind = data.get("kind", "index")
        status = data.get("status", "queued")
        return cls(
            job_id=str(data["job_id"]),
            kind=JobKind(kind) if isinstance(kind, str) else kind,
            status=JobStatus(status) if isinstance(status, str) else status,
            session_id=str(data.get("session_id", "")),
            user_id=str(data.get("user_id", "")),
            phase=str(data.get("phase", "queued")),
            progress=int(data.get("progress", 0)),
            current_item=str(data.get("current_item", "")),
            attempt=int(data.get("attempt", 1)),
            max_attempts=int(data.get("max_attempts", 3)),
            next_retry_at=float(data["next_retry_at"]) if data.get("next_retry_at") is not None else None,
            fingerprint=str(data.get("fingerprint", "")),
            request=dict(data.get("request") or {}),
            result=dict(data.get("result") or {}),
            errors=list(data.get("errors") or []),
            warnings=list(data.get("warnings") or []),
            cancel_requested=bool(data.get("cancel_requested", False)),
            created_at=float(data.get("created_at", time.time())),
            started_at=float(data["started_at"]) if data.get("started_at") is not None else None,
            finished_at=float(data["finished_at"]) if data.get("finished_at") is not None else None,
        )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def is_active(self) -> bool:
        return self.status == JobStatus.running

    def snapshot(self) -> Dict[str, Any]:
        """Status view returned to callers polling a long operation."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progressPercent": self.progress,
            "phase": self.phase,
            "currentItem": self.current_item,
            "attempt": self.attempt,
            "maxAttempts": self.max_attempts,
            "nextRetryAt": self.next_retry_at,
            "errors": self.errors,
            "warnings": self.warnings,
            "cancelRequested": self.cancel_requested,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }
