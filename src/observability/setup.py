"""
Wire observability into the app: middleware, /metrics and /health/detailed.
"""

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from src.log import get_logger
from src.observability.metrics import metrics
from src.observability.middleware import ObservabilityMiddleware
from src.observability.tracing import SERVICE_NAME, SERVICE_VERSION

logger = get_logger(__name__)


def setup_observability(app: FastAPI) -> None:
    """
    Mount observability components on *app*.

    Call after routers are registered and before startup.
    """
    app.add_middleware(ObservabilityMiddleware)

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics():
        return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/health/detailed", tags=["observability"])
    def health_detailed():
        """Component reachability: database, queue, chunk store, LLM."""
        checks = {}

        try:
            from sqlalchemy import text
            from src.db.engine import get_engine
            with get_engine().connect() as conn:
                conn.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {e}"

        try:
            from src.tasks import get_job_queue
            stats = get_job_queue().stats()
            checks["queue"] = "ok"
            checks["queue_stats"] = stats
        except Exception as e:
            checks["queue"] = f"error: {e}"

        try:
            from config.settings import settings
            checks["chunk_store"] = settings.search.backend
            checks["llm"] = "dry_run" if settings.llm.dry_run else (
                "ok" if settings.llm.is_available(settings.llm.default) else "not_configured"
            )
        except Exception as e:
            checks["llm"] = f"error: {e}"

        overall = "ok" if checks.get("database") == "ok" and checks.get("queue") == "ok" else "degraded"
        return {"status": overall, "components": checks}

    metrics.app_info.info({"version": SERVICE_VERSION, "service": SERVICE_NAME})

    logger.info("[observability] middleware + /metrics + /health/detailed registered")
