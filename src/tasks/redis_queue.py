"""
Redis-backed job queue: stream of ready job ids, sorted set of delayed
retries, KV for job state, set of leased jobs, bounded completed/failed lists.

Lease atomicity: a worker owns a job only if its XDEL of the stream entry
returned 1. Every state change is mirrored to the durable job table through
an optional mirror (the progress store).
"""

from __future__ import annotations

import json
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

import redis

from config.settings import TasksSettings, settings
from src.core.errors import NotFoundError, QueueUnavailable, StoreError
from src.log import get_logger
from src.observability import metrics
from src.tasks.task_state import JobKind, JobState, JobStatus

logger = get_logger(__name__)


class JobQueue:
    """Sync Redis client for the job queue and job state."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        config: Optional[TasksSettings] = None,
        mirror: Any = None,
    ):
        self.config = config or settings.tasks
        self._url = redis_url or self.config.redis_url
        self._client = client
        self.mirror = mirror
        p = self.config.key_prefix
        self.k_stream = f"{p}:queue"
        self.k_delayed = f"{p}:delayed"
        self.k_active = f"{p}:active"
        self.k_completed = f"{p}:completed"
        self.k_failed = f"{p}:failed"
        self._p = p

    # ── keys ──

    def _job_key(self, job_id: str) -> str:
        return f"{self._p}:job:{job_id}"

    def _cancel_key(self, job_id: str) -> str:
        return f"{self._p}:cancel:{job_id}"

    def _dedupe_key(self, session_id: str, kind: JobKind, fingerprint: str) -> str:
        return f"{self._p}:dedupe:{session_id}:{kind.value}:{fingerprint}"

    # ── connection ──

    @contextmanager
    def _guard(self) -> Iterator[redis.Redis]:
        """Yield the client; any Redis failure surfaces as QueueUnavailable."""
        try:
            if self._client is None:
                client = redis.from_url(self._url, decode_responses=True, socket_connect_timeout=2)
                client.ping()
                self._client = client
            yield self._client
        except redis.exceptions.RedisError as e:
            logger.warning("[JobQueue] Redis unavailable: %s", e)
            raise QueueUnavailable(f"Job queue backing store is unavailable: {e}") from e

    def ping(self) -> bool:
        with self._guard() as r:
            return bool(r.ping())

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except redis.exceptions.RedisError as e:
                logger.debug("[JobQueue] close failed: %s", e)
            self._client = None

    # ── state KV ──

    def _save(self, r: redis.Redis, state: JobState) -> None:
        r.setex(self._job_key(state.job_id), self.config.state_ttl_seconds, json.dumps(state.to_dict(), ensure_ascii=False))
        self._mirror_save(state)

    def _mirror_save(self, state: JobState) -> None:
        if self.mirror is None:
            return
        try:
            self.mirror.save_job(state)
        except StoreError as e:
            logger.warning("[JobQueue] mirror save failed job_id=%s: %s", state.job_id, e)

    def _event(self, job_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        if self.mirror is None:
            return
        try:
            self.mirror.record_event(job_id, event, data or {})
        except StoreError as e:
            logger.warning("[JobQueue] mirror event failed job_id=%s: %s", job_id, e)

    def record_event(self, job_id: str, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Append a worker-side lifecycle event (stage change, warning) to the job's log."""
        self._event(job_id, event, data)

    def get_state(self, job_id: str) -> Optional[JobState]:
        with self._guard() as r:
            raw = r.get(self._job_key(job_id))
            if not raw:
                return None
            state = JobState.from_dict(json.loads(raw))
            state.cancel_requested = state.cancel_requested or bool(r.exists(self._cancel_key(job_id)))
            return state

    def require_state(self, job_id: str) -> JobState:
        state = self.get_state(job_id)
        if state is None:
            raise NotFoundError("job", job_id)
        return state

    def status(self, job_id: str) -> Dict[str, Any]:
        """Snapshot from Redis; falls back to the durable mirror once evicted."""
        state = self.get_state(job_id)
        if state is not None:
            return state.snapshot()
        if self.mirror is not None:
            snap = self.mirror.snapshot(job_id)
            if snap is not None:
                return snap
        raise NotFoundError("job", job_id)

    # ── enqueue ──

    def enqueue(
        self,
        kind: JobKind,
        session_id: str,
        user_id: str,
        request: Dict[str, Any],
        fingerprint: str = "",
        job_id: Optional[str] = None,
    ) -> Tuple[JobState, bool]:
        """
        Enqueue a job. Returns (state, deduplicated); an identical
        (session, kind, fingerprint) within the dedupe window returns the
        existing job instead of creating one.
        """
        job_id = job_id or uuid.uuid4().hex
        with self._guard() as r:
            if fingerprint:
                dkey = self._dedupe_key(session_id, kind, fingerprint)
                if not r.set(dkey, job_id, nx=True, ex=self.config.dedupe_window_seconds):
                    existing_id = r.get(dkey)
                    existing = self.get_state(existing_id) if existing_id else None
                    if existing is not None:
                        logger.info("[JobQueue] dedupe hit job_id=%s session_id=%s", existing.job_id, session_id)
                        return existing, True
                    r.set(dkey, job_id, ex=self.config.dedupe_window_seconds)

            if r.xlen(self.k_stream) >= self.config.queue_max_len:
                raise QueueUnavailable("Job queue is full")

            state = JobState(
                job_id=job_id,
                kind=kind,
                status=JobStatus.queued,
                session_id=session_id,
                user_id=user_id,
                max_attempts=self.config.max_attempts,
                fingerprint=fingerprint,
                request=request,
            )
            self._save(r, state)
            r.xadd(self.k_stream, {"job_id": job_id, "kind": kind.value, "session_id": session_id})

        metrics.jobs_enqueued_total.labels(kind=kind.value).inc()
        self._event(job_id, "enqueued", {"kind": kind.value})
        logger.info("[JobQueue] enqueued job_id=%s kind=%s session_id=%s", job_id, kind.value, session_id)
        return state, False

    # ── lease ──

    def promote_due(self, now: Optional[float] = None) -> int:
        """Move delayed retries whose next_retry_at has passed back onto the stream."""
        now = now or time.time()
        moved = 0
        with self._guard() as r:
            for job_id in r.zrangebyscore(self.k_delayed, "-inf", now):
                if r.zrem(self.k_delayed, job_id) != 1:
                    continue
                r.xadd(self.k_stream, {"job_id": job_id, "kind": "", "session_id": ""})
                moved += 1
        if moved:
            logger.info("[JobQueue] promoted %d delayed job(s)", moved)
        return moved

    def lease(self) -> Optional[JobState]:
        """Take the oldest ready job; None when nothing is ready."""
        self.promote_due()
        with self._guard() as r:
            for entry_id, data in r.xrange(self.k_stream, count=20):
                if r.xdel(self.k_stream, entry_id) != 1:
                    continue
                job_id = data.get("job_id", "")
                state = self.get_state(job_id)
                if state is None or state.status != JobStatus.queued:
                    continue
                if state.cancel_requested:
                    self._finalize(r, state, JobStatus.cancelled)
                    continue
                state.status = JobStatus.running
                state.phase = "running"
                state.started_at = state.started_at or time.time()
                r.sadd(self.k_active, job_id)
                self._save(r, state)
                self._event(job_id, "leased", {"attempt": state.attempt})
                return state
        return None

    def update(self, state: JobState) -> None:
        """Persist worker-side progress on a leased job."""
        with self._guard() as r:
            self._save(r, state)

    # ── completion ──

    def ack(self, job_id: str, result: Dict[str, Any], cancelled: bool = False) -> JobState:
        """Finish a leased job; a pending cancel request turns it into cancelled."""
        with self._guard() as r:
            state = self.require_state(job_id)
            r.srem(self.k_active, job_id)
            state.result = result
            if cancelled or state.cancel_requested:
                return self._finalize(r, state, JobStatus.cancelled)
            state.progress = 100
            return self._finalize(r, state, JobStatus.completed)

    def nack(self, job_id: str, error: Dict[str, Any], retryable: bool) -> JobState:
        """
        Record a failure. Retryable failures with attempts left go to the delayed
        set with next_retry_at = now + base * 2^(attempt-1); otherwise the job fails.
        """
        with self._guard() as r:
            state = self.require_state(job_id)
            r.srem(self.k_active, job_id)
            state.errors.append(error)

            if state.cancel_requested:
                return self._finalize(r, state, JobStatus.cancelled)

            if retryable and state.attempt < state.max_attempts:
                delay = self.config.base_backoff_ms * (2 ** (state.attempt - 1)) / 1000.0
                next_at = time.time() + delay
                if state.next_retry_at is not None and next_at <= state.next_retry_at:
                    next_at = state.next_retry_at + 0.001
                state.attempt += 1
                state.next_retry_at = next_at
                state.status = JobStatus.queued
                state.phase = "retry-scheduled"
                state.progress = 0
                r.zadd(self.k_delayed, {job_id: next_at})
                self._save(r, state)
                metrics.jobs_retried_total.labels(kind=state.kind.value).inc()
                self._event(job_id, "retry_scheduled", {"attempt": state.attempt, "next_retry_at": next_at})
                logger.warning(
                    "[JobQueue] job_id=%s retry %d/%d in %.1fs",
                    job_id, state.attempt, state.max_attempts, delay,
                )
                return state

            return self._finalize(r, state, JobStatus.failed)

    def _finalize(self, r: redis.Redis, state: JobState, status: JobStatus) -> JobState:
        state.status = status
        if status == JobStatus.completed:
            state.phase = state.result.get("phase") or status.value
        else:
            state.phase = status.value
        state.finished_at = time.time()
        self._save(r, state)
        r.delete(self._cancel_key(state.job_id))
        if status == JobStatus.completed:
            self._retain(r, self.k_completed, state.job_id, self.config.keep_completed)
        else:
            self._retain(r, self.k_failed, state.job_id, self.config.keep_failed)
        metrics.jobs_finished_total.labels(kind=state.kind.value, status=status.value).inc()
        self._event(state.job_id, status.value, {"phase": state.phase})
        logger.info("[JobQueue] job_id=%s finished status=%s", state.job_id, status.value)
        return state

    def _retain(self, r: redis.Redis, list_key: str, job_id: str, keep: int) -> None:
        """Keep the newest *keep* terminal jobs in Redis; older state stays in the mirror only."""
        r.lpush(list_key, job_id)
        keep = max(0, keep)
        evicted = r.lrange(list_key, keep, -1)
        if keep:
            r.ltrim(list_key, 0, keep - 1)
        else:
            r.delete(list_key)
        for old_id in evicted:
            r.delete(self._job_key(old_id))

    # ── cancel / pause ──

    def _remove_pending(self, r: redis.Redis, job_id: str) -> bool:
        if r.zrem(self.k_delayed, job_id) == 1:
            return True
        for entry_id, data in r.xrange(self.k_stream, count=self.config.queue_max_len):
            if data.get("job_id") == job_id:
                return r.xdel(self.k_stream, entry_id) == 1
        return False

    def cancel(self, job_id: str) -> JobState:
        """
        Queued and paused jobs are cancelled immediately. Running jobs get a
        cancel flag the worker honors at its next checkpoint.
        """
        with self._guard() as r:
            state = self.require_state(job_id)
            if state.is_terminal():
                return state
            if state.status == JobStatus.paused or (
                state.status == JobStatus.queued and self._remove_pending(r, job_id)
            ):
                return self._finalize(r, state, JobStatus.cancelled)
            r.setex(self._cancel_key(job_id), self.config.state_ttl_seconds, "1")
            state.cancel_requested = True
        self._event(job_id, "cancel_requested", {})
        logger.info("[JobQueue] cancel requested job_id=%s", job_id)
        return state

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._guard() as r:
            return bool(r.exists(self._cancel_key(job_id)))

    def pause(self, job_id: str) -> JobState:
        with self._guard() as r:
            state = self.require_state(job_id)
            if state.status == JobStatus.queued and self._remove_pending(r, job_id):
                state.status = JobStatus.paused
                state.phase = "paused"
                self._save(r, state)
                self._event(job_id, "paused", {})
            return state

    def resume(self, job_id: str) -> JobState:
        with self._guard() as r:
            state = self.require_state(job_id)
            if state.status == JobStatus.paused:
                state.status = JobStatus.queued
                state.phase = "queued"
                self._save(r, state)
                r.xadd(self.k_stream, {"job_id": job_id, "kind": state.kind.value, "session_id": state.session_id})
                self._event(job_id, "resumed", {})
            return state

    # ── maintenance ──

    def recover_stale(self) -> int:
        """Jobs left leased by a previous process get a retryable failure."""
        with self._guard() as r:
            stale = list(r.smembers(self.k_active))
        for job_id in stale:
            state = self.get_state(job_id)
            if state is None or state.status != JobStatus.running:
                with self._guard() as r:
                    r.srem(self.k_active, job_id)
                continue
            self.nack(
                job_id,
                {"scope": "job", "code": "TRANSIENT", "message": "worker restarted", "at": time.time()},
                retryable=True,
            )
        if stale:
            logger.warning("[JobQueue] recovered %d stale job(s)", len(stale))
        return len(stale)

    def stats(self) -> Dict[str, int]:
        with self._guard() as r:
            waiting = int(r.xlen(self.k_stream)) + int(r.zcard(self.k_delayed))
            active = int(r.scard(self.k_active))
            completed = int(r.llen(self.k_completed))
            failed = int(r.llen(self.k_failed))
        metrics.queue_waiting.set(waiting)
        metrics.queue_active.set(active)
        return {"waiting": waiting, "active": active, "completed": completed, "failed": failed}

    def recent(self, which: str = "completed") -> List[JobState]:
        """Retained terminal jobs, newest first."""
        key = self.k_completed if which == "completed" else self.k_failed
        with self._guard() as r:
            ids = r.lrange(key, 0, -1)
        return [s for s in (self.get_state(i) for i in ids) if s is not None]


# Singleton for app lifecycle
_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    global _job_queue
    if _job_queue is None:
        from src.history.store import get_progress_store
        _job_queue = JobQueue(mirror=get_progress_store())
    return _job_queue


def set_job_queue(queue: Optional[JobQueue]) -> None:
    global _job_queue
    _job_queue = queue
