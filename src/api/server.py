"""
FastAPI entry point - migration pipeline API
"""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import settings
from src.api.errors import register_exception_handlers
from src.api.routes_auth import router as auth_router, admin_router
from src.api.routes_history import router as history_router
from src.api.routes_jobs import router as jobs_router
from src.api.routes_migrations import router as migrations_router
from src.api.routes_sessions import router as sessions_router
from src.log import get_logger
from src.observability import setup_observability
from src.utils.task_runner import cleanup_stale_jobs, run_background_worker, run_session_sweeper

logger = get_logger(__name__)

_DEFAULT_SECRET = "change-me-in-local"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle: DB init -> secret check -> revocation purge -> stale jobs -> worker + sweeper."""

    # 0. Ensure tables exist
    from src.db.engine import init_db
    try:
        init_db()
    except Exception as e:
        logger.warning("[startup] init_db failed (may be OK if alembic already ran): %s", e)
    settings.path.ensure_dirs()

    # 0a. JWT secret key safety check
    if settings.auth.secret_key == _DEFAULT_SECRET:
        logger.warning(
            "[startup] SECURITY WARNING: auth.secret_key is still set to the default value '%s'. "
            "All JWT tokens can be trivially forged. "
            "Set a strong random value in config/migrate_config.local.json -> auth.secret_key "
            "before deploying to production.",
            _DEFAULT_SECRET,
        )

    # 0b. Purge expired JWT revocation records to keep the table compact
    try:
        from src.auth.session import purge_expired_revocations
        purged = purge_expired_revocations()
        if purged:
            logger.info("[startup] purged %d expired token revocation record(s)", purged)
    except Exception as e:
        logger.warning("[startup] purge_expired_revocations failed: %s", e)

    # 1. Requeue jobs a previous process left running
    cleanup_stale_jobs()

    # 2. Background worker pool and expired-session sweeper
    worker_task = asyncio.create_task(run_background_worker())
    sweeper_task = asyncio.create_task(run_session_sweeper())

    yield

    # Shutdown: cancel loops, close Redis
    for task in (worker_task, sweeper_task):
        task.cancel()
    for task in (worker_task, sweeper_task):
        try:
            await task
        except asyncio.CancelledError:
            pass
    from src.tasks.redis_queue import get_job_queue
    try:
        get_job_queue().close()
    except Exception as e:
        logger.warning("[shutdown] closing job queue failed: %s", e)


app = FastAPI(
    title="Code Migration Pipeline API",
    description="Upload a codebase, index it, and request dialect migrations",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth_router)
app.include_router(admin_router)
app.include_router(sessions_router)
app.include_router(migrations_router)
app.include_router(jobs_router)
app.include_router(history_router)

# Observability: middleware + /metrics + /health/detailed
setup_observability(app)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
