"""
FastAPI middleware: HTTP latency / count / status metrics with a trace span per request.
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from src.observability.metrics import metrics
from src.observability.tracing import tracer

# resources whose next path segment is an id
_ID_PARENTS = ("sessions", "jobs", "migrations", "history", "users", "files")


def _normalize_path(path: str) -> str:
    """
    Replace ids in the path with a placeholder to keep label cardinality low.
    e.g. /sessions/abc123/files -> /sessions/{id}/files
    """
    parts = path.strip("/").split("/")
    normalized = []
    skip_next = False
    for part in parts:
        if skip_next:
            normalized.append("{id}")
            skip_next = False
            continue
        normalized.append(part)
        if part in _ID_PARENTS:
            skip_next = True
    return "/" + "/".join(normalized)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Record latency and count for every HTTP request inside a trace span."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in ("/metrics", "/health"):
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)
        with tracer.start_as_current_span(
            f"{method} {path}",
            attributes={"http.method": method, "http.url": str(request.url)},
        ) as span:
            start = time.perf_counter()
            response: Response = await call_next(request)
            elapsed = time.perf_counter() - start

            span.set_attribute("http.status_code", response.status_code)
            metrics.http_requests_total.labels(
                method=method, endpoint=path, status_code=str(response.status_code)
            ).inc()
            metrics.http_request_duration_seconds.labels(method=method, endpoint=path).observe(elapsed)
            return response
