"""
LangGraph transform flow:
validating -> planning -> retrieving -> transforming -> composing -> reporting.

Errors raised in validating, planning or retrieving fail the job. Per-chunk
failures in transforming degrade to warnings and the original bytes are kept.
A stop request during transforming ends the flow after in-flight chunks
return; the outputs produced so far stay on the job and no record is written.
"""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, TypedDict

from langgraph.graph import END, START, StateGraph

from config.settings import settings
from src.chunking.chunker import source_encoding
from src.core.errors import ErrorCode, ItemError, StoreError, ValidationError
from src.core.models import (
    Chunk,
    ChunkFilter,
    Dialect,
    MigrationRequest,
    ScoredChunk,
    migrated_path,
)
from src.generation.plan import enhance_command, migration_relevance, rank_candidates
from src.generation.transformer import TransformOutcome, summarize_validation
from src.ingest import upload
from src.log import get_logger
from src.pipelines.compose import encode_fragment, group_by_file, outermost, span_matches, splice
from src.pipelines.reporter import JobReporter, stage_node
from src.pipelines.validation import validate_request
from src.sessions.registry import MIGRATING, READY

logger = get_logger(__name__)

FLOW = "transform"

# similarity candidates fetched before keyword re-ranking trims them to top_k
CANDIDATE_FACTOR = 2


class TransformState(TypedDict, total=False):
    request: MigrationRequest
    target: Dialect
    candidates: List[Chunk]
    plan: Dict[str, Any]
    contexts: Dict[str, List[Chunk]]
    outcomes: Dict[str, TransformOutcome]
    stopped: bool
    started_at: float
    result: Dict[str, Any]


# ── validating ──

def _validating(state: TransformState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    request: MigrationRequest = state["request"]
    registry = cfg["registry"]
    target = validate_request(request)
    session = registry.assert_ownership(request.session_id, request.user_id)
    if session["state"] not in (READY, MIGRATING):
        raise ValidationError.invalid_state(session["state"], READY)
    if not cfg["chunk_store"].statistics(request.session_id)["totalChunks"]:
        raise ValidationError(
            ErrorCode.INVALID_STATE,
            "No indexed code found for this session; upload files and run the index first",
            details={"session_id": request.session_id},
        )
    registry.set_state(request.session_id, MIGRATING)
    registry.touch(request.session_id)
    return {"target": target, "started_at": time.time()}


# ── planning ──

def select_candidates(
    store: Any,
    embedder: Any,
    request: MigrationRequest,
) -> List[Chunk]:
    """
    Similarity candidates for the command, re-ranked by keyword hits and
    trimmed to top_k. When nothing clears the threshold, the filtered chunks
    with the highest migration relevance are used instead.
    """
    opts = request.options
    chunk_filter = ChunkFilter(kinds=opts.kinds or None, dialect=opts.source_dialect or None)
    query = embedder.embed_query(enhance_command(request.command))
    scored = store.similar(
        request.session_id,
        query,
        chunk_filter,
        top_k=opts.top_k * CANDIDATE_FACTOR,
        threshold=opts.similarity_threshold,
    )
    if scored:
        ranked = rank_candidates(scored, request.command, opts.top_k)
        return outermost(sc.chunk for sc, _ in ranked)

    pool = store.get_session(request.session_id, chunk_filter)
    logger.info(
        "[transform] no chunk above similarity %.2f; falling back to relevance over %d chunk(s)",
        opts.similarity_threshold, len(pool),
    )
    pool = outermost(pool)
    fallback = [ScoredChunk(chunk=c, similarity=migration_relevance(c)) for c in pool]
    ranked = rank_candidates(fallback, request.command, opts.top_k)
    return [sc.chunk for sc, _ in ranked]


def _planning(state: TransformState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    reporter: JobReporter = cfg["reporter"]
    request: MigrationRequest = state["request"]
    target: Dialect = state["target"]
    candidates = select_candidates(cfg["chunk_store"], cfg["embedder"], request)
    source = Dialect.parse(request.options.source_dialect) if request.options.source_dialect else None
    plan = cfg["planner"].generate(request.command, target, candidates, request.options, source)
    plan["metadata"]["candidateChunkIds"] = [c.chunk_id for c in candidates]

    reporter.state.result = {"plan": plan}
    reporter.save()
    logger.info("[transform] plan ready: %d candidate chunk(s), risk=%s", len(candidates), plan.get("riskLevel"))
    return {"candidates": candidates, "plan": plan}


# ── retrieving ──

def _retrieving(state: TransformState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    reporter: JobReporter = cfg["reporter"]
    store = cfg["chunk_store"]
    request: MigrationRequest = state["request"]
    opts = request.options
    candidates = state.get("candidates") or []
    contexts: Dict[str, List[Chunk]] = {}
    for i, chunk in enumerate(candidates, 1):
        if not chunk.embedding:
            contexts[chunk.chunk_id] = []
            continue
        scope = None if opts.include_related_files else ChunkFilter(logical_path=chunk.logical_path)
        neighbors = store.similar(
            request.session_id,
            chunk.embedding,
            scope,
            top_k=opts.top_k,
            threshold=opts.similarity_threshold,
            exclude_chunk_id=chunk.chunk_id,
        )
        contexts[chunk.chunk_id] = [sc.chunk for sc in neighbors]
        reporter.progress(i, len(candidates), chunk.logical_path)
    return {"contexts": contexts}


# ── transforming ──

def run_bounded(
    items: List[Chunk],
    fn: Callable[[Chunk], TransformOutcome],
    concurrency: int,
    should_stop: Callable[[], bool],
    on_done: Callable[[TransformOutcome], None],
) -> bool:
    """
    Run *fn* over *items* with at most *concurrency* in flight. Once
    *should_stop* answers True no new item starts; in-flight items finish.
    Returns True when the run was stopped early.
    """
    if concurrency <= 1:
        for item in items:
            if should_stop():
                return True
            on_done(fn(item))
        return False

    stopped = False
    queue = iter(items)
    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="transform") as pool:
        pending: Set[Future] = set()

        def submit_next() -> bool:
            item = next(queue, None)
            if item is None:
                return False
            pending.add(pool.submit(fn, item))
            return True

        while len(pending) < concurrency and not should_stop() and submit_next():
            pass
        while pending:
            done, pending = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                on_done(fut.result())
            if not stopped and should_stop():
                stopped = True
            while not stopped and len(pending) < concurrency and submit_next():
                pass
        if not stopped and next(queue, None) is not None:
            stopped = True
    return stopped


def _transforming(state: TransformState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    reporter: JobReporter = cfg["reporter"]
    transformer = cfg["transformer"]
    request: MigrationRequest = state["request"]
    target: Dialect = state["target"]
    plan = state.get("plan") or {}
    contexts = state.get("contexts") or {}
    candidates = state.get("candidates") or []
    outcomes: Dict[str, TransformOutcome] = {}

    def one(chunk: Chunk) -> TransformOutcome:
        try:
            return transformer.transform(
                chunk,
                contexts.get(chunk.chunk_id, []),
                target,
                request.options,
                command=request.command,
                plan=plan,
            )
        except Exception as e:
            logger.exception("[transform] chunk %s raised", chunk.chunk_id)
            return TransformOutcome(
                chunk_id=chunk.chunk_id,
                logical_path=chunk.logical_path,
                ok=False,
                migrated_code="",
                error=ItemError.from_exc(f"chunk:{chunk.chunk_id}", e),
            )

    by_id = {c.chunk_id: c for c in candidates}

    def done(outcome: TransformOutcome) -> None:
        outcomes[outcome.chunk_id] = outcome
        chunk = by_id[outcome.chunk_id]
        where = f"{chunk.logical_path}:{chunk.start_line} {chunk.name}"
        if outcome.error is not None:
            reporter.item_error(outcome.error)
            reporter.warn(f"{where}: original code kept ({outcome.error.code})")
        for w in outcome.warnings:
            reporter.warn(f"{where}: {w}")
        reporter.progress(len(outcomes), len(candidates), where)

    stopped = run_bounded(
        candidates,
        one,
        max(1, int(settings.transform.concurrency)),
        reporter.should_stop,
        done,
    )
    if stopped:
        logger.info("[transform] stopped after %d/%d chunk(s)", len(outcomes), len(candidates))
        reporter.state.result = {
            **(reporter.state.result or {}),
            "outputs": partial_outputs(candidates, outcomes),
            "processed": len(outcomes),
            "total": len(candidates),
        }
    return {"outcomes": outcomes, "stopped": stopped}


def _route_after_transforming(state: TransformState) -> str:
    return END if state.get("stopped") else "composing"


# ── composing ──

def compose_files(
    candidates: List[Chunk],
    outcomes: Dict[str, TransformOutcome],
    target: Dialect,
    reporter: Optional[JobReporter] = None,
) -> List[Dict[str, Any]]:
    """
    Splice migrated chunks into each file. A file whose bytes no longer match
    its indexed spans is left out with a file-scoped error; other files still
    compose.
    """
    per_file: List[Dict[str, Any]] = []
    for file_id, chunks in group_by_file(candidates).items():
        row = upload.get_file(file_id)
        if row is None:
            raise StoreError(f"uploaded file {file_id} no longer exists")
        original = upload.read_file_bytes(row)
        stale = next((c for c in chunks if not span_matches(original, c)), None)
        if stale is not None:
            error = ItemError(
                scope=f"file:{row.logical_path}",
                code=ErrorCode.STORE_FAILURE.value,
                message=f"{row.logical_path} changed since it was indexed; re-run the index",
            )
            logger.warning("[transform] %s (chunk %s)", error.message, stale.chunk_id)
            if reporter is not None:
                reporter.item_error(error)
                reporter.warn(f"{row.logical_path}: skipped, {error.message}")
            continue

        encoding = source_encoding(original)
        replacements: List[Tuple[int, int, bytes]] = []
        succeeded = failed = warnings = 0
        for chunk in chunks:
            outcome = outcomes.get(chunk.chunk_id)
            if outcome is None or not outcome.ok:
                failed += 1
                continue
            succeeded += 1
            warnings += len(outcome.warnings)
            replacements.append((chunk.start_byte, chunk.end_byte, encode_fragment(outcome.migrated_code, encoding)))
        composed = splice(original, replacements)
        per_file.append({
            "fileId": file_id,
            "logicalPath": row.logical_path,
            "migratedPath": migrated_path(row.logical_path, target),
            "migratedBytes": composed.decode(source_encoding(composed)),
            "sizeBytes": len(composed),
            "statistics": {
                "chunksAttempted": len(chunks),
                "chunksSucceeded": succeeded,
                "chunksFailed": failed,
                "warnings": warnings,
            },
        })
    return per_file


def _composing(state: TransformState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    per_file = compose_files(
        state.get("candidates") or [], state.get("outcomes") or {}, state["target"], cfg["reporter"],
    )
    return {"result": {"perFile": per_file}}


# ── reporting ──

def build_statistics(per_file: List[Dict[str, Any]], outcomes: Dict[str, TransformOutcome], elapsed_ms: float) -> Dict[str, Any]:
    chunks = sum(f["statistics"]["chunksAttempted"] for f in per_file)
    files = len(per_file)
    failed_files = sum(1 for f in per_file if f["statistics"]["chunksFailed"])
    return {
        "chunksAnalyzed": chunks,
        "filesProcessed": files,
        "successfulFiles": files - failed_files,
        "failedFiles": failed_files,
        "successRate": round((files - failed_files) / files, 4) if files else 1.0,
        "avgTimePerChunk": round(elapsed_ms / chunks, 2) if chunks else 0.0,
        "chunksSucceeded": sum(1 for o in outcomes.values() if o.ok),
    }


def _reporting(state: TransformState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    reporter: JobReporter = cfg["reporter"]
    request: MigrationRequest = state["request"]
    outcomes = state.get("outcomes") or {}
    per_file = (state.get("result") or {}).get("perFile") or []
    elapsed_ms = (time.time() - state.get("started_at", time.time())) * 1000
    statistics = build_statistics(per_file, outcomes, elapsed_ms)
    validation = summarize_validation(outcomes.values())
    plan = state.get("plan") or {}

    record = cfg["history"].save_record(
        session_id=request.session_id,
        target_dialect=state["target"].value,
        per_file=per_file,
        validation=validation,
        plan=plan,
        statistics=statistics,
        job_id=reporter.job_id,
        user_id=request.user_id,
        command=request.command,
    )
    result = {
        "phase": "completed",
        "migrationId": record["migration_id"],
        "targetDialect": state["target"].value,
        "statistics": statistics,
        "validation": validation,
        "plan": plan,
        "files": [{"logicalPath": f["logicalPath"], "migratedPath": f["migratedPath"]} for f in per_file],
    }
    logger.info(
        "[transform] record %s: %d/%d file(s) clean, %d chunk(s)",
        record["migration_id"], statistics["successfulFiles"], statistics["filesProcessed"], statistics["chunksAnalyzed"],
    )
    return {"result": result}


def build_transform_graph():
    builder = StateGraph(TransformState)
    builder.add_node("validating", stage_node(FLOW, "validating", _validating))
    builder.add_node("planning", stage_node(FLOW, "planning", _planning))
    builder.add_node("retrieving", stage_node(FLOW, "retrieving", _retrieving))
    builder.add_node("transforming", stage_node(FLOW, "transforming", _transforming))
    builder.add_node("composing", stage_node(FLOW, "composing", _composing))
    builder.add_node("reporting", stage_node(FLOW, "reporting", _reporting))

    builder.add_edge(START, "validating")
    builder.add_edge("validating", "planning")
    builder.add_edge("planning", "retrieving")
    builder.add_edge("retrieving", "transforming")
    builder.add_conditional_edges("transforming", _route_after_transforming)
    builder.add_edge("composing", "reporting")
    builder.add_edge("reporting", END)
    return builder.compile()


def partial_outputs(candidates: List[Chunk], outcomes: Dict[str, TransformOutcome]) -> List[Dict[str, Any]]:
    """Per-chunk outputs kept on a stopped job, in candidate order."""
    return [outcomes[c.chunk_id].to_dict() for c in candidates if c.chunk_id in outcomes]

