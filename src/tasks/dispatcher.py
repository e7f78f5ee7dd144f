"""
Dispatcher: lease jobs from the Redis queue and hand them to the pipeline
coordinator in worker threads, with at most settings.tasks.workers in flight.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional

from config.settings import settings
from src.core.errors import MigrationError
from src.log import get_logger
from src.tasks.redis_queue import get_job_queue
from src.tasks.task_state import JobState

logger = get_logger(__name__)


def run_job_sync(state: JobState) -> Optional[JobState]:
    """
    Run one leased job to settlement. The coordinator acks or nacks; anything
    escaping it (queue outage during settlement) is logged and left for
    recover_stale on the next start.
    """
    from src.pipelines.coordinator import get_coordinator

    logger.info(
        "[dispatcher] running job_id=%s kind=%s session_id=%s attempt=%d",
        state.job_id, state.kind.value, state.session_id, state.attempt,
    )
    try:
        final = get_coordinator().run(state)
    except Exception as e:
        logger.exception("[dispatcher] job_id=%s could not be settled: %s", state.job_id, e)
        return None
    logger.info("[dispatcher] job_id=%s -> %s (%s)", final.job_id, final.status.value, final.phase)
    return final


async def run_worker_once(in_flight: Dict[str, asyncio.Task]) -> bool:
    """
    Lease one job if a worker slot is free and start it on a thread.
    Returns True if a job was started.
    """
    if len(in_flight) >= max(1, settings.tasks.workers):
        return False
    try:
        state = get_job_queue().lease()
    except MigrationError as e:
        logger.warning("[dispatcher] lease failed: %s", e)
        return False
    if state is None:
        return False
    in_flight[state.job_id] = asyncio.create_task(asyncio.to_thread(run_job_sync, state))
    return True
