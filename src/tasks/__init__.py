"""
Migration job queue: Redis stream + delayed retry set + state KV, mirrored to SQL.
"""

from src.tasks.task_state import JobKind, JobStatus, JobState
from src.tasks.redis_queue import get_job_queue, set_job_queue, JobQueue

__all__ = [
    "JobKind",
    "JobStatus",
    "JobState",
    "get_job_queue",
    "set_job_queue",
    "JobQueue",
]
