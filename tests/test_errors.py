"""
Error vocabulary: stable codes, hints, retry flags and the HTTP status mapping.
"""

from src.api.errors import error_body, status_for
from src.core.errors import (
    AuthError,
    Cancelled,
    EmbedError,
    ErrorCode,
    ExpansionError,
    ItemError,
    NotFoundError,
    ProviderError,
    QueueUnavailable,
    QuotaError,
    StoreError,
    TimedOut,
    TransformError,
    ValidationError,
    hints_for,
)


# ── codes and hints ──

class TestMigrationError:
    def test_to_dict_carries_code_kind_and_hints(self):
        err = ValidationError.invalid_dialect("cobol")
        d = err.to_dict()
        assert d["code"] == "INVALID_DIALECT"
        assert d["kind"] == "validation"
        assert d["details"] == {"value": "cobol"}
        assert d["hints"]
        assert str(err).startswith("INVALID_DIALECT:")

    def test_hints_for_unknown_code_is_empty(self):
        assert hints_for("NOT_A_CODE") == []
        assert hints_for(ErrorCode.QUEUE_UNAVAILABLE)

    def test_every_code_has_a_hint_entry(self):
        from src.core.errors import ERROR_HINTS
        assert set(ERROR_HINTS) == set(ErrorCode)

    def test_provider_retryable_follows_code(self):
        assert ProviderError(ErrorCode.RATE_LIMITED, "slow down").retryable
        assert ProviderError(ErrorCode.TRANSIENT, "502").retryable
        assert not ProviderError(ErrorCode.AUTH_FAILED, "bad key").retryable
        assert not EmbedError(ErrorCode.INVALID_INPUT, "bad text").retryable
        assert TransformError(ErrorCode.MODEL_UNAVAILABLE, "gone").kind.value == "transform"

    def test_provider_retryable_can_be_overridden(self):
        assert not ProviderError(ErrorCode.RATE_LIMITED, "x", retryable=False).retryable

    def test_expansion_constructors(self):
        assert ExpansionError.traversal("../etc/passwd").code == ErrorCode.PATH_TRAVERSAL
        err = ExpansionError.too_large(10, 5)
        assert err.details == {"total_bytes": 10, "limit": 5}
        assert ExpansionError.corrupt("bad header").code == ErrorCode.ARCHIVE_CORRUPT


class TestItemError:
    def test_from_migration_error(self):
        item = ItemError.from_exc("chunk:abc", TimedOut())
        assert item.code == "TIMED_OUT"
        assert item.scope == "chunk:abc"

    def test_from_plain_exception(self):
        item = ItemError.from_exc("job", RuntimeError("boom"))
        assert item.code == "INTERNAL"
        assert item.message == "boom"

    def test_dict_shape(self):
        item = ItemError(scope="file:a.js", code="PARSER_FAILURE", message="bad", at=1.0)
        assert ItemError.from_dict(item.to_dict()) == item


# ── HTTP mapping ──

class TestStatusMapping:
    def test_status_per_kind(self):
        assert status_for(ValidationError.invalid_field("command", "too short")) == 422
        assert status_for(ValidationError.dangerous_command(r"rm\s+-rf")) == 400
        assert status_for(AuthError.required()) == 401
        assert status_for(AuthError.invalid_token()) == 401
        assert status_for(AuthError.forbidden()) == 403
        assert status_for(QuotaError(ErrorCode.TOO_MANY_SESSIONS, "limit")) == 429
        assert status_for(ExpansionError.traversal("/abs")) == 400
        assert status_for(NotFoundError("session", "s1")) == 404
        assert status_for(QueueUnavailable()) == 503
        assert status_for(StoreError("disk full")) == 500
        assert status_for(Cancelled()) == 500

    def test_error_body_shape(self):
        body = error_body("NOT_FOUND", "missing")
        assert body == {"error": {"code": "NOT_FOUND", "message": "missing", "hints": [], "details": {}}}
