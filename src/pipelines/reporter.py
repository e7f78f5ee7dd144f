"""
Worker-side job reporting: stage transitions, progress, per-item errors and
the cooperative stop checks (user cancel, soft deadline).
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

from langchain_core.runnables import RunnableConfig

from src.core.errors import Cancelled, ItemError, TimedOut
from src.log import get_logger
from src.observability import metrics
from src.observability.tracing import tracer
from src.tasks.task_state import JobState

logger = get_logger(__name__)

MAX_RECORDED_ITEMS = 200


class JobReporter:
    """Mutates the leased JobState and persists it through the queue."""

    def __init__(self, queue: Any, state: JobState, timeout_seconds: float = 0.0):
        self.queue = queue
        self.state = state
        self.deadline: Optional[float] = time.time() + timeout_seconds if timeout_seconds and timeout_seconds > 0 else None
        self._dropped_errors = 0
        self._dropped_warnings = 0

    @property
    def job_id(self) -> str:
        return self.state.job_id

    # ── stop checks ──

    def timed_out(self) -> bool:
        return self.deadline is not None and time.time() >= self.deadline

    def cancel_requested(self) -> bool:
        return self.queue.is_cancel_requested(self.job_id)

    def should_stop(self) -> bool:
        return self.timed_out() or self.cancel_requested()

    def check(self) -> None:
        if self.timed_out():
            raise TimedOut()
        if self.cancel_requested():
            raise Cancelled()

    # ── updates ──

    def save(self) -> None:
        self.queue.update(self.state)

    def stage(self, phase: str) -> None:
        """Enter a stage; a pending cancel or an expired deadline stops here."""
        self.check()
        self.state.phase = phase
        self.state.current_item = ""
        self.save()
        self.queue.record_event(self.job_id, "stage", {"phase": phase})
        logger.info("[job %s] %s", self.job_id, phase)

    def progress(self, done: int, total: int, current_item: str = "") -> None:
        self.state.progress = int(done * 100 / total) if total else 100
        self.state.current_item = current_item
        self.save()

    def warn(self, message: str) -> None:
        if len(self.state.warnings) >= MAX_RECORDED_ITEMS:
            self._dropped_warnings += 1
            return
        self.state.warnings.append(message)

    def item_error(self, error: ItemError) -> None:
        if len(self.state.errors) >= MAX_RECORDED_ITEMS:
            self._dropped_errors += 1
            return
        self.state.errors.append(error.to_dict())

    def dropped(self) -> Dict[str, int]:
        return {"errors": self._dropped_errors, "warnings": self._dropped_warnings}


def stage_node(flow: str, phase: str, fn: Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]):
    """
    Wrap a stage function as a graph node: stop check, phase update, span and
    duration metric. *fn* receives (state, configurable).
    """

    def node(state: Dict[str, Any], *, config: RunnableConfig) -> Dict[str, Any]:
        cfg = config["configurable"]
        reporter: JobReporter = cfg["reporter"]
        reporter.stage(phase)
        started = time.time()
        with tracer.start_as_current_span(f"{flow}.{phase}", attributes={"job.id": reporter.job_id}):
            try:
                return fn(state, cfg)
            finally:
                metrics.stage_duration_seconds.labels(flow=flow, stage=phase).observe(time.time() - started)

    node.__name__ = f"{flow}_{phase}"
    return node
