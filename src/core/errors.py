"""Pipeline error types with stable error codes.

Every component raises a ``MigrationError`` subclass at its boundary. The
``kind`` groups codes for the HTTP surface (status mapping) and the
``retryable`` flag drives queue and provider retry decisions. Per-item
degradations (one file, one chunk) are captured as ``ItemError`` values on
the job instead of being raised.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    QUOTA = "quota"
    EXPANSION = "expansion"
    PARSE = "parse"
    EMBED = "embed"
    TRANSFORM = "transform"
    STORE = "store"
    QUEUE = "queue"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    """Stable codes surfaced to API clients and stored on jobs."""

    # validation
    INVALID_FIELD = "INVALID_FIELD"
    INVALID_DIALECT = "INVALID_DIALECT"
    DANGEROUS_COMMAND = "DANGEROUS_COMMAND"
    DIALECT_MISMATCH = "DIALECT_MISMATCH"
    INVALID_STATE = "INVALID_STATE"
    # auth
    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    FORBIDDEN = "FORBIDDEN"
    # quota
    TOO_MANY_SESSIONS = "TOO_MANY_SESSIONS"
    TOO_MANY_FILES = "TOO_MANY_FILES"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    # expansion
    ARCHIVE_TOO_LARGE = "ARCHIVE_TOO_LARGE"
    ARCHIVE_CORRUPT = "ARCHIVE_CORRUPT"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    # parse
    UNSUPPORTED_DIALECT = "UNSUPPORTED_DIALECT"
    PARSER_FAILURE = "PARSER_FAILURE"
    # external model (embedding + completion)
    RATE_LIMITED = "RATE_LIMITED"
    TRANSIENT = "TRANSIENT"
    INVALID_INPUT = "INVALID_INPUT"
    AUTH_FAILED = "AUTH_FAILED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    DIMENSION_MISMATCH = "DIMENSION_MISMATCH"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    INVALID_OUTPUT = "INVALID_OUTPUT"
    SEMANTIC_MISMATCH = "SEMANTIC_MISMATCH"
    # store / queue
    STORE_FAILURE = "STORE_FAILURE"
    QUEUE_UNAVAILABLE = "QUEUE_UNAVAILABLE"
    # lifecycle
    NOT_FOUND = "NOT_FOUND"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"
    INTERNAL = "INTERNAL"


ERROR_HINTS: Dict[ErrorCode, List[str]] = {
    ErrorCode.INVALID_FIELD: [
        "Check the request fields against the documented ranges",
    ],
    ErrorCode.INVALID_DIALECT: [
        "Pick a target dialect from GET /migrations/dialects",
    ],
    ErrorCode.DANGEROUS_COMMAND: [
        "Describe the code change only; shell or system commands are not accepted",
    ],
    ErrorCode.DIALECT_MISMATCH: [
        "Re-detect the file dialect or choose the matching source dialect",
    ],
    ErrorCode.INVALID_STATE: [
        "Wait for indexing to finish before requesting a migration",
        "Poll GET /jobs/{job_id} for the index job status",
    ],
    ErrorCode.AUTH_REQUIRED: ["Send an Authorization: Bearer <token> header"],
    ErrorCode.INVALID_TOKEN: ["Log in again to obtain a fresh token"],
    ErrorCode.FORBIDDEN: ["You can only access your own sessions and jobs"],
    ErrorCode.TOO_MANY_SESSIONS: [
        "Delete sessions you no longer need",
        "Upgrade the account role for a higher session quota",
    ],
    ErrorCode.TOO_MANY_FILES: [
        "Split the project across several sessions",
        "Remove generated or vendored files before uploading",
    ],
    ErrorCode.FILE_TOO_LARGE: [
        "Upload the file without bundled assets",
        "Split very large source files",
    ],
    ErrorCode.ARCHIVE_TOO_LARGE: [
        "Remove node_modules, build output and binaries before zipping",
    ],
    ErrorCode.ARCHIVE_CORRUPT: ["Re-create the archive with a standard ZIP tool"],
    ErrorCode.PATH_TRAVERSAL: ["Archive entries must use relative paths inside the archive root"],
    ErrorCode.UNSUPPORTED_DIALECT: ["Only files with a supported parser are chunked; others are skipped"],
    ErrorCode.PARSER_FAILURE: ["Check the file for syntax errors"],
    ErrorCode.RATE_LIMITED: [
        "Try again in a few minutes",
        "Lower embedding.batch_size or raise embedding.batch_delay_ms",
    ],
    ErrorCode.TRANSIENT: ["Try again in a few minutes"],
    ErrorCode.INVALID_INPUT: ["Inspect the chunk text sent to the model"],
    ErrorCode.AUTH_FAILED: ["Check the provider API key environment variable"],
    ErrorCode.QUOTA_EXCEEDED: ["Verify the provider quota and billing"],
    ErrorCode.DIMENSION_MISMATCH: ["Check embedding.model and embedding.dimension agree"],
    ErrorCode.MODEL_UNAVAILABLE: [
        "Check the provider status",
        "Switch transform.provider to another configured provider",
    ],
    ErrorCode.INVALID_OUTPUT: ["Retry the migration; the model returned unusable output"],
    ErrorCode.SEMANTIC_MISMATCH: ["Review the migrated chunk manually"],
    ErrorCode.STORE_FAILURE: ["Check database connectivity and disk space"],
    ErrorCode.QUEUE_UNAVAILABLE: [
        "Check that Redis is running and tasks.redis_url is correct",
    ],
    ErrorCode.NOT_FOUND: ["The resource does not exist or has expired"],
    ErrorCode.CANCELLED: [],
    ErrorCode.TIMED_OUT: ["Narrow the migration command so fewer chunks are selected"],
    ErrorCode.INTERNAL: ["Check the server logs for details"],
}


def hints_for(code: ErrorCode | str) -> List[str]:
    try:
        return list(ERROR_HINTS.get(ErrorCode(code), []))
    except ValueError:
        return []


class MigrationError(Exception):
    """Base error with a stable code and structured details."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.details = details or {}

    @property
    def hints(self) -> List[str]:
        return hints_for(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "hints": self.hints,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(MigrationError):
    kind = ErrorKind.VALIDATION

    @classmethod
    def invalid_field(cls, field_name: str, reason: str) -> "ValidationError":
        return cls(ErrorCode.INVALID_FIELD, f"Invalid '{field_name}': {reason}", details={"field": field_name})

    @classmethod
    def invalid_dialect(cls, value: str) -> "ValidationError":
        return cls(ErrorCode.INVALID_DIALECT, f"Unsupported target dialect: {value}", details={"value": value})

    @classmethod
    def dangerous_command(cls, pattern: str) -> "ValidationError":
        return cls(
            ErrorCode.DANGEROUS_COMMAND,
            "Command contains a potentially dangerous pattern",
            details={"pattern": pattern},
        )

    @classmethod
    def invalid_state(cls, state: str, expected: str) -> "ValidationError":
        return cls(
            ErrorCode.INVALID_STATE,
            f"Session is '{state}', expected '{expected}'",
            details={"state": state, "expected": expected},
        )


class AuthError(MigrationError):
    kind = ErrorKind.AUTH

    @classmethod
    def required(cls) -> "AuthError":
        return cls(ErrorCode.AUTH_REQUIRED, "Authentication required")

    @classmethod
    def invalid_token(cls) -> "AuthError":
        return cls(ErrorCode.INVALID_TOKEN, "Invalid or expired token")

    @classmethod
    def forbidden(cls, reason: str = "Access denied") -> "AuthError":
        return cls(ErrorCode.FORBIDDEN, reason)


class QuotaError(MigrationError):
    kind = ErrorKind.QUOTA


class ExpansionError(MigrationError):
    kind = ErrorKind.EXPANSION

    @classmethod
    def traversal(cls, path: str) -> "ExpansionError":
        return cls(ErrorCode.PATH_TRAVERSAL, f"Unsafe archive path: {path}", details={"path": path, "reason": "traversal"})

    @classmethod
    def too_large(cls, total: int, limit: int) -> "ExpansionError":
        return cls(
            ErrorCode.ARCHIVE_TOO_LARGE,
            f"Archive expands to {total} bytes, limit is {limit}",
            details={"total_bytes": total, "limit": limit},
        )

    @classmethod
    def corrupt(cls, reason: str) -> "ExpansionError":
        return cls(ErrorCode.ARCHIVE_CORRUPT, f"Archive is unreadable: {reason}")


class ParseError(MigrationError):
    kind = ErrorKind.PARSE


class ProviderError(MigrationError):
    """Failure reported by the external embedding or completion endpoint."""

    kind = ErrorKind.EMBED

    RETRYABLE_CODES = frozenset({
        ErrorCode.RATE_LIMITED,
        ErrorCode.TRANSIENT,
        ErrorCode.QUOTA_EXCEEDED,
        ErrorCode.MODEL_UNAVAILABLE,
    })

    def __init__(self, code: ErrorCode, message: str, status_code: Optional[int] = None, **kwargs: Any):
        kwargs.setdefault("retryable", code in self.RETRYABLE_CODES)
        super().__init__(code, message, **kwargs)
        self.status_code = status_code


class EmbedError(ProviderError):
    kind = ErrorKind.EMBED


class TransformError(ProviderError):
    kind = ErrorKind.TRANSFORM


class StoreError(MigrationError):
    kind = ErrorKind.STORE

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(ErrorCode.STORE_FAILURE, message, **kwargs)


class QueueUnavailable(MigrationError):
    kind = ErrorKind.QUEUE

    def __init__(self, message: str = "Job queue backing store is unavailable", **kwargs: Any):
        super().__init__(ErrorCode.QUEUE_UNAVAILABLE, message, **kwargs)


class NotFoundError(MigrationError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, ident: str):
        super().__init__(ErrorCode.NOT_FOUND, f"{resource} not found: {ident}", details={"resource": resource, "id": ident})


class Cancelled(MigrationError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Job cancelled"):
        super().__init__(ErrorCode.CANCELLED, message)


class TimedOut(MigrationError):
    kind = ErrorKind.TIMED_OUT

    def __init__(self, message: str = "Job exceeded its deadline"):
        super().__init__(ErrorCode.TIMED_OUT, message)


@dataclass
class ItemError:
    """A per-file or per-chunk failure recorded on a job instead of raised."""

    scope: str
    code: str
    message: str
    at: float = field(default_factory=time.time)

    @classmethod
    def from_exc(cls, scope: str, exc: BaseException) -> "ItemError":
        if isinstance(exc, MigrationError):
            return cls(scope=scope, code=exc.code.value, message=exc.message)
        return cls(scope=scope, code=ErrorCode.INTERNAL.value, message=str(exc) or type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        return {"scope": self.scope, "code": self.code, "message": self.message, "at": self.at}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ItemError":
        return cls(scope=d.get("scope", ""), code=d.get("code", ""), message=d.get("message", ""), at=d.get("at", 0.0))
