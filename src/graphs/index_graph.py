"""
LangGraph index flow: expanding -> detecting -> extracting -> embedding -> storing.

Per-file and per-chunk failures are recorded on the job and never fail the
flow; only stage-level errors (caps exceeded, store unavailable) propagate.
Chunk ids are content-derived, so running the flow twice over unchanged files
rewrites the same rows.
"""

from __future__ import annotations

from typing import Any, Dict, List, TypedDict

from langgraph.graph import END, START, StateGraph

from config.settings import settings
from src.auth.users import quota_for_user
from src.chunking import chunker
from src.core.errors import ErrorCode, ExpansionError, ItemError
from src.core.models import Dialect, EmbeddingResult
from src.ingest import upload
from src.ingest.archive import ExpansionCaps, check_entry
from src.log import get_logger
from src.observability import metrics
from src.parser.dialect import detect
from src.pipelines.reporter import JobReporter, stage_node

logger = get_logger(__name__)

FLOW = "index"


class IndexState(TypedDict, total=False):
    session_id: str
    user_id: str
    full: bool
    files: List[Dict[str, Any]]
    files_total: int
    files_extracted: int
    files_skipped: int
    files_failed: int
    chunks_extracted: int
    chunks_embedded: int
    chunks_embed_failed: int
    result: Dict[str, Any]


def _expanding(state: IndexState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Load stored uploads and re-check them against the caller's caps."""
    reporter: JobReporter = cfg["reporter"]
    session_id = state["session_id"]
    caps = ExpansionCaps.from_settings(quota_for_user(state["user_id"]))
    rows = upload.files_to_index(session_id, include_indexed=bool(state.get("full")))

    files: List[Dict[str, Any]] = []
    skipped = failed = 0
    total_bytes = 0
    for i, row in enumerate(rows, 1):
        problem = check_entry(row.logical_path, row.size_bytes, caps)
        if problem:
            reporter.warn(problem)
            upload.set_file_status(row.file_id, "skipped", error=problem)
            skipped += 1
            continue
        try:
            data = upload.read_file_bytes(row)
        except OSError as e:
            reporter.item_error(ItemError(scope=f"file:{row.logical_path}", code=ErrorCode.STORE_FAILURE.value, message=str(e)))
            upload.set_file_status(row.file_id, "failed", error=str(e))
            failed += 1
            continue
        total_bytes += len(data)
        if total_bytes > caps.max_total_bytes:
            raise ExpansionError.too_large(total_bytes, caps.max_total_bytes)
        files.append({"file_id": row.file_id, "logical_path": row.logical_path, "data": data})
        reporter.progress(i, len(rows), row.logical_path)

    logger.info("[index] session=%s %d file(s) to index, %d skipped", session_id, len(files), skipped)
    return {
        "files": files,
        "files_total": len(rows),
        "files_skipped": skipped,
        "files_failed": failed,
    }


def _detecting(state: IndexState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    reporter: JobReporter = cfg["reporter"]
    files = state.get("files") or []
    out = []
    for i, f in enumerate(files, 1):
        detection = detect(f["logical_path"], f["data"])
        out.append({**f, "detection": detection})
        reporter.progress(i, len(files), f["logical_path"])
    return {"files": out}


def _extracting(state: IndexState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    reporter: JobReporter = cfg["reporter"]
    store = cfg["chunk_store"]
    session_id = state["session_id"]
    files = state.get("files") or []
    extracted = 0
    skipped = state.get("files_skipped", 0)
    failed = state.get("files_failed", 0)
    chunk_count = 0

    for i, f in enumerate(files, 1):
        detection = f["detection"]
        dialect: Dialect = detection.dialect
        path = f["logical_path"]
        if not chunker.supports(dialect):
            msg = f"No chunker for dialect '{dialect.value}' ({path})"
            reporter.warn(msg)
            upload.set_file_status(f["file_id"], "skipped", error=msg, detection=detection.to_dict())
            skipped += 1
            reporter.progress(i, len(files), path)
            continue

        result = chunker.extract(
            f["data"],
            dialect,
            session_id=session_id,
            file_id=f["file_id"],
            logical_path=path,
        )
        for w in result.warnings:
            reporter.warn(w)
        store.delete_file(session_id, f["file_id"])
        if result.chunks:
            store.upsert_chunks(session_id, result.chunks)
        chunk_count += len(result.chunks)
        extracted += 1
        metrics.chunks_extracted_total.labels(dialect=dialect.value).inc(len(result.chunks))
        upload.set_file_status(f["file_id"], "extracted", detection=detection.to_dict())
        reporter.progress(i, len(files), path)

    logger.info("[index] session=%s extracted %d chunk(s) from %d file(s)", session_id, chunk_count, extracted)
    return {
        "files": [],
        "files_extracted": extracted,
        "files_skipped": skipped,
        "files_failed": failed,
        "chunks_extracted": chunk_count,
    }


def _embedding(state: IndexState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Embed every chunk of the session still lacking a vector; writes land per batch."""
    reporter: JobReporter = cfg["reporter"]
    store = cfg["chunk_store"]
    embedder = cfg["embedder"]
    session_id = state["session_id"]
    pending = [c for c in store.get_session(session_id) if not c.has_embedding]
    counts = {"ok": 0, "failed": 0, "done": 0}

    def on_batch(results: List[EmbeddingResult]) -> None:
        ok = [r for r in results if r.ok]
        bad = [r for r in results if not r.ok]
        if ok:
            store.attach_embeddings([r.chunk_id for r in ok], [r.vector for r in ok], embedder.model)
        if bad:
            store.mark_embed_failed([r.chunk_id for r in bad])
            for r in bad:
                err = r.error or {}
                reporter.item_error(ItemError(
                    scope=f"chunk:{r.chunk_id}",
                    code=err.get("code", ErrorCode.TRANSIENT.value),
                    message=err.get("message", "embedding failed"),
                ))
        counts["ok"] += len(ok)
        counts["failed"] += len(bad)
        counts["done"] += len(results)
        reporter.progress(counts["done"], len(pending))

    embedder.embed(pending, on_batch=on_batch, cancel_check=reporter.should_stop)
    if counts["failed"]:
        reporter.warn(f"{counts['failed']} chunk(s) stored without an embedding")
    return {"chunks_embedded": counts["ok"], "chunks_embed_failed": counts["failed"]}


def _storing(state: IndexState, cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Summarize the session index and apply the embed success threshold."""
    reporter: JobReporter = cfg["reporter"]
    store = cfg["chunk_store"]
    stats = store.statistics(state["session_id"])
    total = stats["totalChunks"]
    rate = stats["embeddedChunks"] / total if total else 1.0
    phase = "completed"
    if rate < settings.index.embed_success_threshold:
        phase = "completed-with-warnings"
        reporter.warn(
            f"Only {stats['embeddedChunks']}/{total} chunks embedded "
            f"(threshold {settings.index.embed_success_threshold:.0%})"
        )
    result = {
        "phase": phase,
        "files": {
            "total": state.get("files_total", 0),
            "extracted": state.get("files_extracted", 0),
            "skipped": state.get("files_skipped", 0),
            "failed": state.get("files_failed", 0),
        },
        "chunks": {
            "extracted": state.get("chunks_extracted", 0),
            "embedded": state.get("chunks_embedded", 0),
            "embedFailed": state.get("chunks_embed_failed", 0),
        },
        "embedRate": round(rate, 4),
        "statistics": stats,
    }
    return {"result": result}


def build_index_graph():
    builder = StateGraph(IndexState)
    builder.add_node("expanding", stage_node(FLOW, "expanding", _expanding))
    builder.add_node("detecting", stage_node(FLOW, "detecting", _detecting))
    builder.add_node("extracting", stage_node(FLOW, "extracting", _extracting))
    builder.add_node("embedding", stage_node(FLOW, "embedding", _embedding))
    builder.add_node("storing", stage_node(FLOW, "storing", _storing))

    builder.add_edge(START, "expanding")
    builder.add_edge("expanding", "detecting")
    builder.add_edge("detecting", "extracting")
    builder.add_edge("extracting", "embedding")
    builder.add_edge("embedding", "storing")
    builder.add_edge("storing", END)
    return builder.compile()
