"""
Redis job queue on fakeredis: enqueue/dedupe, lease, ack/nack with backoff,
cancel/pause/resume, retention and the durable mirror fallback.
"""

import time

import pytest

from config.settings import TasksSettings
from src.core.errors import NotFoundError, QueueUnavailable
from src.history.store import ProgressStore
from src.tasks.redis_queue import JobQueue
from src.tasks.task_state import JobKind, JobStatus

ERR = {"scope": "job", "code": "TRANSIENT", "message": "boom", "at": 0.0}


def _enqueue(q, session_id="s1", fingerprint="", kind=JobKind.index):
    state, _ = q.enqueue(kind, session_id, "alice", {"session_id": session_id}, fingerprint=fingerprint)
    return state


# ── enqueue / lease ──

class TestEnqueueLease:
    def test_fifo_lease(self, queue):
        a, b = _enqueue(queue, "s1"), _enqueue(queue, "s2")
        first = queue.lease()
        assert first.job_id == a.job_id
        assert first.status == JobStatus.running
        assert first.started_at is not None
        assert queue.lease().job_id == b.job_id
        assert queue.lease() is None

    def test_dedupe_within_window(self, queue):
        a = _enqueue(queue, fingerprint="fp1")
        again, dedup = queue.enqueue(JobKind.index, "s1", "alice", {}, fingerprint="fp1")
        assert dedup
        assert again.job_id == a.job_id
        other, dedup = queue.enqueue(JobKind.transform, "s1", "alice", {}, fingerprint="fp1")
        assert not dedup
        assert other.job_id != a.job_id

    def test_no_fingerprint_no_dedupe(self, queue):
        assert _enqueue(queue).job_id != _enqueue(queue).job_id

    def test_stats(self, queue):
        _enqueue(queue)
        _enqueue(queue)
        queue.lease()
        assert queue.stats() == {"waiting": 1, "active": 1, "completed": 0, "failed": 0}

    def test_unknown_job(self, queue):
        assert queue.get_state("nope") is None
        with pytest.raises(NotFoundError):
            queue.require_state("nope")
        with pytest.raises(NotFoundError):
            queue.status("nope")


# ── completion ──

class TestCompletion:
    def test_ack_completes(self, queue):
        job = _enqueue(queue)
        queue.lease()
        done = queue.ack(job.job_id, {"phase": "completed-with-warnings"})
        assert done.status == JobStatus.completed
        assert done.progress == 100
        assert done.phase == "completed-with-warnings"
        assert queue.stats()["completed"] == 1

    def test_nack_retry_backoff(self, queue):
        job = _enqueue(queue)
        queue.lease()
        before = time.time()
        retried = queue.nack(job.job_id, ERR, retryable=True)
        assert retried.status == JobStatus.queued
        assert retried.phase == "retry-scheduled"
        assert retried.attempt == 2
        # base_backoff_ms * 2^(attempt-1) for the first failure
        assert retried.next_retry_at >= before + queue.config.base_backoff_ms / 1000.0
        assert queue.lease() is None

        assert queue.promote_due(now=time.time() + 3600) == 1
        again = queue.lease()
        assert again.job_id == job.job_id
        assert again.attempt == 2

    def test_nack_fails_after_max_attempts(self, queue):
        job = _enqueue(queue)
        for _ in range(queue.config.max_attempts - 1):
            queue.promote_due(now=time.time() + 3600)
            queue.lease()
            queue.nack(job.job_id, ERR, retryable=True)
        queue.promote_due(now=time.time() + 3600)
        queue.lease()
        final = queue.nack(job.job_id, ERR, retryable=True)
        assert final.status == JobStatus.failed
        assert len(final.errors) == queue.config.max_attempts

    def test_non_retryable_fails_immediately(self, queue):
        job = _enqueue(queue)
        queue.lease()
        assert queue.nack(job.job_id, ERR, retryable=False).status == JobStatus.failed
        assert [s.job_id for s in queue.recent("failed")] == [job.job_id]

    def test_retention_evicts_to_mirror(self, fake_redis):
        mirror = ProgressStore()
        q = JobQueue(client=fake_redis, config=TasksSettings(keep_completed=2), mirror=mirror)
        jobs = [_enqueue(q, f"s{i}") for i in range(3)]
        for j in jobs:
            q.lease()
            q.ack(j.job_id, {"phase": "completed"})
        assert q.get_state(jobs[0].job_id) is None
        assert [s.job_id for s in q.recent()] == [jobs[2].job_id, jobs[1].job_id]
        # evicted state is still served from the durable table
        assert q.status(jobs[0].job_id)["status"] == "completed"


# ── cancel / pause ──

class TestCancelPause:
    def test_cancel_queued_is_immediate(self, queue):
        job = _enqueue(queue)
        assert queue.cancel(job.job_id).status == JobStatus.cancelled
        assert queue.lease() is None

    def test_cancel_running_sets_flag(self, queue):
        job = _enqueue(queue)
        queue.lease()
        state = queue.cancel(job.job_id)
        assert state.status == JobStatus.running
        assert state.cancel_requested
        assert queue.is_cancel_requested(job.job_id)
        done = queue.ack(job.job_id, {"phase": "completed"})
        assert done.status == JobStatus.cancelled
        assert not queue.is_cancel_requested(job.job_id)

    def test_cancel_terminal_is_noop(self, queue):
        job = _enqueue(queue)
        queue.lease()
        queue.ack(job.job_id, {})
        assert queue.cancel(job.job_id).status == JobStatus.completed

    def test_cancel_delayed_retry(self, queue):
        job = _enqueue(queue)
        queue.lease()
        queue.nack(job.job_id, ERR, retryable=True)
        assert queue.cancel(job.job_id).status == JobStatus.cancelled
        assert queue.promote_due(now=time.time() + 3600) == 0

    def test_pause_and_resume(self, queue):
        job = _enqueue(queue)
        assert queue.pause(job.job_id).status == JobStatus.paused
        assert queue.lease() is None
        assert queue.resume(job.job_id).status == JobStatus.queued
        assert queue.lease().job_id == job.job_id

    def test_pause_running_is_noop(self, queue):
        job = _enqueue(queue)
        queue.lease()
        assert queue.pause(job.job_id).status == JobStatus.running

    def test_cancel_paused(self, queue):
        job = _enqueue(queue)
        queue.pause(job.job_id)
        assert queue.cancel(job.job_id).status == JobStatus.cancelled


# ── maintenance ──

def test_recover_stale_requeues_running_jobs(queue):
    job = _enqueue(queue)
    queue.lease()
    assert queue.recover_stale() == 1
    state = queue.get_state(job.job_id)
    assert state.status == JobStatus.queued
    assert state.errors[0]["message"] == "worker restarted"
    assert queue.stats()["active"] == 0


def test_mirror_records_events(queue):
    job = _enqueue(queue)
    queue.lease()
    queue.record_event(job.job_id, "stage", {"stage": "extracting"})
    queue.ack(job.job_id, {"phase": "completed"})
    events = [e["event"] for e in queue.mirror.events(job.job_id)]
    assert events == ["enqueued", "leased", "stage", "completed"]


def test_unreachable_redis_is_queue_unavailable():
    q = JobQueue(redis_url="redis://127.0.0.1:1/0")
    with pytest.raises(QueueUnavailable):
        q.ping()
