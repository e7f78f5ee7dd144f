"""
Pipeline coordinator: runs one leased job through its graph and settles it
on the queue (ack on success or cancel, nack with the retry decision on
failure). Session state follows the job: indexing/ready for index jobs,
migrating/ready for transform jobs.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from config.settings import settings
from src.core.errors import Cancelled, ItemError, MigrationError, TimedOut
from src.core.models import MigrationRequest
from src.log import get_logger
from src.pipelines.reporter import JobReporter
from src.sessions.registry import COLLECTING, INDEXING, MIGRATING, READY
from src.tasks.task_state import JobKind, JobState

logger = get_logger(__name__)


class PipelineCoordinator:
    """
    Collaborators are injectable for tests; anything left as None resolves to
    the process-wide singleton on first use.
    """

    def __init__(
        self,
        queue: Any = None,
        chunk_store: Any = None,
        embedder: Any = None,
        transformer: Any = None,
        planner: Any = None,
        registry: Any = None,
        history: Any = None,
    ):
        self._queue = queue
        self._chunk_store = chunk_store
        self._embedder = embedder
        self._transformer = transformer
        self._planner = planner
        self._registry = registry
        self._history = history
        self._index_graph = None
        self._transform_graph = None

    # ── collaborators ──

    @property
    def queue(self):
        if self._queue is None:
            from src.tasks.redis_queue import get_job_queue
            self._queue = get_job_queue()
        return self._queue

    @property
    def chunk_store(self):
        if self._chunk_store is None:
            from src.indexing.chunk_store import get_chunk_store
            self._chunk_store = get_chunk_store()
        return self._chunk_store

    @property
    def embedder(self):
        if self._embedder is None:
            from src.indexing.embedder import get_embedding_client
            self._embedder = get_embedding_client()
        return self._embedder

    @property
    def transformer(self):
        if self._transformer is None:
            from src.generation.transformer import Transformer
            self._transformer = Transformer()
        return self._transformer

    @property
    def planner(self):
        if self._planner is None:
            from src.generation.plan import MigrationPlanner
            self._planner = MigrationPlanner()
        return self._planner

    @property
    def registry(self):
        if self._registry is None:
            from src.sessions.registry import get_session_registry
            self._registry = get_session_registry()
        return self._registry

    @property
    def history(self):
        if self._history is None:
            from src.history.store import get_history_store
            self._history = get_history_store()
        return self._history

    def _config(self, reporter: JobReporter) -> Dict[str, Any]:
        return {
            "configurable": {
                "reporter": reporter,
                "chunk_store": self.chunk_store,
                "embedder": self.embedder,
                "transformer": self.transformer,
                "planner": self.planner,
                "registry": self.registry,
                "history": self.history,
            }
        }

    # ── entry ──

    def run(self, state: JobState) -> JobState:
        """Run a leased job to a terminal (or retry-scheduled) state."""
        if state.kind == JobKind.index:
            return self.run_index(state)
        return self.run_transform(state)

    def run_index(self, state: JobState) -> JobState:
        from src.graphs.index_graph import build_index_graph

        reporter = JobReporter(self.queue, state, settings.tasks.index_job_timeout_seconds)
        session_id = state.session_id
        settled = COLLECTING
        try:
            prior = self.registry.assert_ownership(session_id, state.user_id)["state"]
            # a failed re-index leaves the earlier chunks usable
            if prior == READY:
                settled = READY
            self.registry.set_state(session_id, INDEXING)
            if self._index_graph is None:
                self._index_graph = build_index_graph()
            final = self._index_graph.invoke(
                {
                    "session_id": session_id,
                    "user_id": state.user_id,
                    "full": bool(state.request.get("full")),
                },
                config=self._config(reporter),
            )
            result = dict(final.get("result") or {})
            self._attach_dropped(reporter, result)
            reporter.save()
            settled = READY
            return self.queue.ack(state.job_id, result)
        except (Cancelled, TimedOut) as e:
            return self._stopped(reporter, e)
        except Exception as e:
            return self._failed(reporter, e)
        finally:
            self._settle_session(session_id, state.user_id, settled, from_state=INDEXING)

    def run_transform(self, state: JobState) -> JobState:
        from src.graphs.transform_graph import build_transform_graph

        reporter = JobReporter(self.queue, state, settings.transform.job_timeout_seconds)
        request = MigrationRequest.from_dict(state.request)
        request.session_id = request.session_id or state.session_id
        request.user_id = request.user_id or state.user_id
        try:
            if self._transform_graph is None:
                self._transform_graph = build_transform_graph()
            final = self._transform_graph.invoke({"request": request}, config=self._config(reporter))
            if final.get("stopped"):
                if reporter.timed_out():
                    raise TimedOut()
                raise Cancelled()
            result = dict(final.get("result") or {})
            self._attach_dropped(reporter, result)
            reporter.save()
            return self.queue.ack(state.job_id, result)
        except (Cancelled, TimedOut) as e:
            return self._stopped(reporter, e)
        except Exception as e:
            return self._failed(reporter, e)
        finally:
            self._settle_session(request.session_id, request.user_id, READY, from_state=MIGRATING)

    # ── settlement ──

    @staticmethod
    def _attach_dropped(reporter: JobReporter, result: Dict[str, Any]) -> None:
        dropped = reporter.dropped()
        if dropped["errors"] or dropped["warnings"]:
            result["dropped"] = dropped

    def _stopped(self, reporter: JobReporter, exc: MigrationError) -> JobState:
        """Cancel or deadline: keep partial output, finish as cancelled, no record."""
        state = reporter.state
        if isinstance(exc, TimedOut):
            reporter.item_error(ItemError.from_exc("job", exc))
        result = dict(state.result or {})
        result["phase"] = "cancelled"
        result["reason"] = "timed_out" if isinstance(exc, TimedOut) else "cancelled"
        self._attach_dropped(reporter, result)
        reporter.save()
        logger.info("[coordinator] job %s stopped (%s) at %s", state.job_id, result["reason"], state.phase)
        return self.queue.ack(state.job_id, result, cancelled=True)

    def _failed(self, reporter: JobReporter, exc: Exception) -> JobState:
        state = reporter.state
        retryable = bool(getattr(exc, "retryable", False)) if isinstance(exc, MigrationError) else False
        if isinstance(exc, MigrationError):
            logger.warning("[coordinator] job %s failed at %s: %s", state.job_id, state.phase, exc)
        else:
            logger.exception("[coordinator] job %s raised at %s", state.job_id, state.phase)
        reporter.save()
        return self.queue.nack(state.job_id, ItemError.from_exc("job", exc).to_dict(), retryable=retryable)

    def _settle_session(self, session_id: str, user_id: str, target: str, from_state: str) -> None:
        """Move the session out of its busy state; a missing or moved-on session is left alone."""
        try:
            current = self.registry.get(session_id, user_id)
        except MigrationError:
            return
        if current["state"] != from_state:
            return
        try:
            self.registry.set_state(session_id, target)
        except MigrationError as e:
            logger.warning("[coordinator] session %s stays %s: %s", session_id, from_state, e)


_coordinator: Optional[PipelineCoordinator] = None


def get_coordinator() -> PipelineCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = PipelineCoordinator()
    return _coordinator


def set_coordinator(coordinator: Optional[PipelineCoordinator]) -> None:
    global _coordinator
    _coordinator = coordinator
