"""
Background task worker: polls the Redis job queue and executes jobs via
asyncio.to_thread; a second loop sweeps expired sessions.
"""

from __future__ import annotations

import asyncio
import os
from typing import Dict

from config.settings import settings
from src.core.errors import MigrationError
from src.log import get_logger

logger = get_logger(__name__)

# ── Worker instance id (shown in logs) ───────────────────────────────────────
_WORKER_INSTANCE_ID = f"{os.getenv('HOSTNAME', 'local')}:{os.getpid()}"


def get_worker_instance_id() -> str:
    return _WORKER_INSTANCE_ID


# ──────────────────────────────────────────────────────────────────────────────
# Startup cleanup
# ──────────────────────────────────────────────────────────────────────────────

def cleanup_stale_jobs() -> int:
    """Jobs still marked running were interrupted by a process restart; requeue them."""
    from src.tasks.redis_queue import get_job_queue

    try:
        count = get_job_queue().recover_stale()
    except MigrationError as e:
        logger.warning("[task_runner] cleanup_stale_jobs failed: %s", e)
        return 0
    if count:
        logger.warning("[task_runner] requeued %d interrupted job(s)", count)
    return count


# ──────────────────────────────────────────────────────────────────────────────
# Loops
# ──────────────────────────────────────────────────────────────────────────────

async def run_background_worker() -> None:
    """Lease and run queued jobs; up to settings.tasks.workers at a time."""
    from src.tasks.dispatcher import run_worker_once
    from src.tasks.redis_queue import get_job_queue

    poll = max(0.05, float(settings.tasks.poll_interval_seconds))
    logger.info(
        "[task_runner] background worker started (instance=%s, poll=%.2fs, workers=%d)",
        _WORKER_INSTANCE_ID,
        poll,
        settings.tasks.workers,
    )
    in_flight: Dict[str, asyncio.Task] = {}

    while True:
        try:
            # ── Prune finished jobs ──
            for jid in [k for k, t in in_flight.items() if t.done()]:
                in_flight.pop(jid, None)

            # ── Queue gauges ──
            try:
                get_job_queue().stats()
            except MigrationError as e:
                logger.debug("[task_runner] queue stats unavailable: %s", e)

            # ── Drain ready jobs into free slots ──
            while await run_worker_once(in_flight):
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[task_runner] poll cycle error: %s", e, exc_info=True)

        await asyncio.sleep(poll)


async def run_session_sweeper() -> None:
    """Hard-delete expired sessions every settings.sessions.sweep_interval_seconds."""
    from src.sessions.registry import get_session_registry

    interval = max(1, int(settings.sessions.sweep_interval_seconds))
    logger.info("[task_runner] session sweeper started (interval=%ds)", interval)
    while True:
        try:
            await asyncio.to_thread(get_session_registry().sweep_expired)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[task_runner] session sweep failed: %s", e, exc_info=True)
        await asyncio.sleep(interval)
