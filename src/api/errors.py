"""
Map MigrationError kinds onto HTTP status codes with one exception handler.
Body shape: {"error": {"code", "message", "hints", "details"}}.
"""

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.core.errors import ErrorCode, ErrorKind, MigrationError, hints_for
from src.log import get_logger

logger = get_logger(__name__)

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.QUOTA: 429,
    ErrorKind.EXPANSION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.QUEUE: 503,
}


def status_for(exc: MigrationError) -> int:
    if exc.code == ErrorCode.DANGEROUS_COMMAND:
        return 400
    if exc.kind == ErrorKind.AUTH:
        return 403 if exc.code == ErrorCode.FORBIDDEN else 401
    return _STATUS_BY_KIND.get(exc.kind, 500)


def error_body(code: str, message: str, hints=None, details=None) -> dict:
    return {"error": {"code": code, "message": message, "hints": hints or [], "details": details or {}}}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MigrationError)
    async def _migration_error(request: Request, exc: MigrationError):
        status = status_for(exc)
        if status >= 500:
            logger.error("[api] %s %s -> %s", request.method, request.url.path, exc)
        headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
        return JSONResponse(
            status_code=status,
            content=error_body(exc.code.value, exc.message, exc.hints, exc.details),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_body(
                ErrorCode.INVALID_FIELD.value,
                "Request body or parameters are invalid",
                hints_for(ErrorCode.INVALID_FIELD),
                {"errors": jsonable_encoder(exc.errors())},
            ),
        )

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("[api] %s %s raised", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body(ErrorCode.INTERNAL.value, "Internal server error", hints_for(ErrorCode.INTERNAL)),
        )
