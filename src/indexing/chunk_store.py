"""
Chunk store: content-addressed chunk persistence keyed by session.

Two backends share one contract:
  - SqlChunkStore: chunks and their embedding in `code_chunks`; similarity is
    NumPy cosine over the session's embedded chunks.
  - MilvusChunkStore (milvus_ops): same SQL rows, vectors mirrored into a
    Milvus COSINE collection for native top-k search.

Writes are atomic per chunk; deleting a session removes all of its chunks in
one transaction.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from config.settings import settings
from src.core.errors import StoreError
from src.core.models import (
    Chunk,
    ChunkFilter,
    ChunkStatus,
    Comment,
    Dependency,
    Parameter,
    ScoredChunk,
)
from src.db.engine import get_engine
from src.db.models import CodeChunkRow
from src.log import get_logger
from src.observability import metrics

logger = get_logger(__name__)


# ── row <-> chunk ──

def chunk_to_row(chunk: Chunk) -> CodeChunkRow:
    return CodeChunkRow(
        chunk_id=chunk.chunk_id,
        session_id=chunk.session_id,
        file_id=chunk.file_id,
        logical_path=chunk.logical_path,
        kind=chunk.kind,
        name=chunk.name,
        start_line=chunk.start_line,
        end_line=chunk.end_line,
        start_byte=chunk.start_byte,
        end_byte=chunk.end_byte,
        code=chunk.code,
        dialect=chunk.dialect,
        complexity=chunk.complexity,
        is_async=int(chunk.is_async),
        is_static=int(chunk.is_static),
        visibility=chunk.visibility,
        parameters_json=json.dumps([p.__dict__ for p in chunk.parameters]),
        dependencies_json=json.dumps([d.__dict__ for d in chunk.dependencies]),
        comments_json=json.dumps([c.__dict__ for c in chunk.comments]),
        tags_json=json.dumps(chunk.tags),
        embedding_json=json.dumps(chunk.embedding) if chunk.embedding else None,
        embedding_model=chunk.embedding_model if chunk.embedding else None,
        embedded_at=chunk.embedded_at if chunk.embedding else None,
        status=chunk.status,
        updated_at=time.time(),
    )


def row_to_chunk(row: CodeChunkRow, include_embedding: bool = True) -> Chunk:
    return Chunk(
        chunk_id=row.chunk_id,
        session_id=row.session_id,
        file_id=row.file_id,
        logical_path=row.logical_path,
        kind=row.kind,
        name=row.name,
        start_line=row.start_line,
        end_line=row.end_line,
        start_byte=row.start_byte,
        end_byte=row.end_byte,
        code=row.code,
        dialect=row.dialect,
        complexity=row.complexity,
        is_async=bool(row.is_async),
        is_static=bool(row.is_static),
        visibility=row.visibility,
        parameters=[Parameter(**p) for p in json.loads(row.parameters_json or "[]")],
        dependencies=[Dependency(**d) for d in json.loads(row.dependencies_json or "[]")],
        comments=[Comment(**c) for c in json.loads(row.comments_json or "[]")],
        tags=json.loads(row.tags_json or "[]"),
        embedding=row.get_embedding() if include_embedding else None,
        embedding_model=row.embedding_model,
        embedded_at=row.embedded_at,
        status=row.status,
    )


def rank_by_cosine(
    candidates: Sequence[Chunk],
    query_vector: Sequence[float],
    threshold: float,
    top_k: int,
    exclude_chunk_id: Optional[str] = None,
) -> List[ScoredChunk]:
    """Cosine rank; keeps >= threshold, orders by (-similarity, chunk_id), cuts at top_k."""
    pool = [c for c in candidates if c.embedding and c.chunk_id != exclude_chunk_id]
    if not pool or top_k <= 0:
        return []
    q = np.asarray(query_vector, dtype=np.float64)
    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return []
    matrix = np.asarray([c.embedding for c in pool], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1)
    norms[norms == 0] = np.inf
    sims = (matrix @ q) / (norms * q_norm)

    scored = [
        ScoredChunk(chunk=c, similarity=float(s))
        for c, s in zip(pool, sims)
        if float(s) >= threshold
    ]
    scored.sort(key=lambda sc: (-sc.similarity, sc.chunk.chunk_id))
    return scored[:top_k]


class ChunkStore(ABC):
    """Persistence contract shared by every backend."""

    dimension: int = 768

    @abstractmethod
    def upsert_chunks(self, session_id: str, chunks: Sequence[Chunk]) -> int:
        ...

    @abstractmethod
    def attach_embeddings(self, chunk_ids: Sequence[str], vectors: Sequence[Sequence[float]], model: str) -> int:
        ...

    @abstractmethod
    def mark_embed_failed(self, chunk_ids: Sequence[str]) -> int:
        ...

    @abstractmethod
    def get_session(self, session_id: str, chunk_filter: Optional[ChunkFilter] = None) -> List[Chunk]:
        ...

    @abstractmethod
    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        ...

    @abstractmethod
    def similar(
        self,
        session_id: str,
        query_vector: Sequence[float],
        chunk_filter: Optional[ChunkFilter] = None,
        top_k: int = 10,
        threshold: Optional[float] = None,
        exclude_chunk_id: Optional[str] = None,
    ) -> List[ScoredChunk]:
        ...

    @abstractmethod
    def delete_file(self, session_id: str, file_id: str) -> List[str]:
        """Drop every chunk of one uploaded file; returns the removed chunk ids."""
        ...

    @abstractmethod
    def delete_session(self, session_id: str) -> int:
        ...

    @abstractmethod
    def statistics(self, session_id: str) -> Dict[str, Any]:
        ...

    def close(self) -> None:
        pass

    def _check_vectors(self, chunk_ids: Sequence[str], vectors: Sequence[Sequence[float]]) -> None:
        if len(chunk_ids) != len(vectors):
            raise StoreError(f"{len(chunk_ids)} chunk ids but {len(vectors)} vectors")
        bad = [cid for cid, v in zip(chunk_ids, vectors) if len(v) != self.dimension]
        if bad:
            raise StoreError(
                f"{len(bad)} vectors do not have {self.dimension} dimensions",
                details={"chunk_ids": bad[:20]},
            )


class SqlChunkStore(ChunkStore):
    """Chunk rows in SQL; cosine ranking in NumPy."""

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension or settings.embedding.dimension

    def upsert_chunks(self, session_id: str, chunks: Sequence[Chunk]) -> int:
        written = 0
        failed: List[str] = []
        engine = get_engine()
        for chunk in chunks:
            if chunk.session_id != session_id:
                raise StoreError(
                    f"Chunk {chunk.chunk_id} belongs to session {chunk.session_id}, not {session_id}"
                )
            try:
                with Session(engine) as db:
                    db.merge(chunk_to_row(chunk))
                    db.commit()
                written += 1
            except SQLAlchemyError as e:
                logger.warning("[chunk_store] upsert %s failed: %s", chunk.chunk_id, e)
                failed.append(chunk.chunk_id)
        if failed:
            raise StoreError(
                f"{len(failed)}/{len(chunks)} chunk writes failed",
                details={"chunk_ids": failed[:20], "written": written},
            )
        return written

    def attach_embeddings(self, chunk_ids: Sequence[str], vectors: Sequence[Sequence[float]], model: str) -> int:
        self._check_vectors(chunk_ids, vectors)
        now = time.time()
        updated = 0
        try:
            with Session(get_engine()) as db:
                for cid, vec in zip(chunk_ids, vectors):
                    row = db.get(CodeChunkRow, cid)
                    if row is None:
                        continue
                    row.embedding_json = json.dumps([float(x) for x in vec])
                    row.embedding_model = model
                    row.embedded_at = now
                    row.status = ChunkStatus.EMBEDDED.value
                    row.updated_at = now
                    db.add(row)
                    db.commit()
                    updated += 1
        except SQLAlchemyError as e:
            raise StoreError(f"attach embeddings failed: {e}") from e
        return updated

    def mark_embed_failed(self, chunk_ids: Sequence[str]) -> int:
        updated = 0
        try:
            with Session(get_engine()) as db:
                for cid in chunk_ids:
                    row = db.get(CodeChunkRow, cid)
                    if row is None:
                        continue
                    row.embedding_json = None
                    row.embedding_model = None
                    row.embedded_at = None
                    row.status = ChunkStatus.EMBED_FAILED.value
                    row.updated_at = time.time()
                    db.add(row)
                    updated += 1
                db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"mark embed failure failed: {e}") from e
        return updated

    def _select(self, session_id: str, chunk_filter: Optional[ChunkFilter], embedded_only: bool = False):
        stmt = select(CodeChunkRow).where(CodeChunkRow.session_id == session_id)
        f = chunk_filter
        if f is not None:
            if f.kinds:
                stmt = stmt.where(CodeChunkRow.kind.in_(f.kinds))
            if f.dialect:
                stmt = stmt.where(CodeChunkRow.dialect == f.dialect)
            if f.min_complexity is not None:
                stmt = stmt.where(CodeChunkRow.complexity >= f.min_complexity)
            if f.max_complexity is not None:
                stmt = stmt.where(CodeChunkRow.complexity <= f.max_complexity)
            if f.is_async is not None:
                stmt = stmt.where(CodeChunkRow.is_async == int(f.is_async))
            if f.logical_path:
                stmt = stmt.where(CodeChunkRow.logical_path == f.logical_path)
        if embedded_only:
            stmt = stmt.where(CodeChunkRow.embedding_json.is_not(None))
        return stmt.order_by(CodeChunkRow.logical_path, CodeChunkRow.start_line, CodeChunkRow.chunk_id)

    def get_session(self, session_id: str, chunk_filter: Optional[ChunkFilter] = None) -> List[Chunk]:
        try:
            with Session(get_engine()) as db:
                rows = db.exec(self._select(session_id, chunk_filter)).all()
                return [row_to_chunk(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"read session chunks failed: {e}") from e

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        with Session(get_engine()) as db:
            row = db.get(CodeChunkRow, chunk_id)
            return row_to_chunk(row) if row else None

    def similar(
        self,
        session_id: str,
        query_vector: Sequence[float],
        chunk_filter: Optional[ChunkFilter] = None,
        top_k: int = 10,
        threshold: Optional[float] = None,
        exclude_chunk_id: Optional[str] = None,
    ) -> List[ScoredChunk]:
        if len(query_vector) != self.dimension:
            raise StoreError(f"query vector has {len(query_vector)} dimensions, expected {self.dimension}")
        threshold = settings.search.similarity_threshold if threshold is None else threshold
        try:
            with Session(get_engine()) as db:
                rows = db.exec(self._select(session_id, chunk_filter, embedded_only=True)).all()
                candidates = [row_to_chunk(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"similarity read failed: {e}") from e

        results = rank_by_cosine(candidates, query_vector, threshold, top_k, exclude_chunk_id)
        metrics.similarity_queries_total.labels(backend="sql").inc()
        metrics.similarity_results.labels(backend="sql").observe(len(results))
        return results

    def delete_file(self, session_id: str, file_id: str) -> List[str]:
        try:
            with Session(get_engine()) as db:
                ids = list(db.exec(
                    select(CodeChunkRow.chunk_id).where(
                        CodeChunkRow.session_id == session_id,
                        CodeChunkRow.file_id == file_id,
                    )
                ).all())
                if ids:
                    db.execute(sa_delete(CodeChunkRow).where(CodeChunkRow.chunk_id.in_(ids)))
                    db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"delete file chunks failed: {e}") from e
        return ids

    def delete_session(self, session_id: str) -> int:
        try:
            with Session(get_engine()) as db:
                result = db.execute(sa_delete(CodeChunkRow).where(CodeChunkRow.session_id == session_id))
                db.commit()
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            raise StoreError(f"delete session chunks failed: {e}") from e
        logger.info("[chunk_store] deleted %d chunks of session %s", deleted, session_id)
        return deleted

    def statistics(self, session_id: str) -> Dict[str, Any]:
        with Session(get_engine()) as db:
            rows = db.exec(
                select(CodeChunkRow.kind, CodeChunkRow.dialect, CodeChunkRow.complexity, CodeChunkRow.status)
                .where(CodeChunkRow.session_id == session_id)
            ).all()
        by_kind: Counter = Counter()
        by_dialect: Counter = Counter()
        by_complexity: Counter = Counter()
        embedded = 0
        total_complexity = 0
        for kind, dialect, complexity, status in rows:
            by_kind[kind] += 1
            by_dialect[dialect] += 1
            by_complexity[str(complexity)] += 1
            total_complexity += complexity
            if status == ChunkStatus.EMBEDDED.value:
                embedded += 1
        total = len(rows)
        return {
            "byKind": dict(by_kind),
            "byDialect": dict(by_dialect),
            "byComplexity": dict(by_complexity),
            "totalChunks": total,
            "embeddedChunks": embedded,
            "avgComplexity": round(total_complexity / total, 2) if total else 0.0,
        }


# ── factory ──

_store: Optional[ChunkStore] = None


def get_chunk_store() -> ChunkStore:
    """Backend chosen by settings.search.backend (sql | milvus)."""
    global _store
    if _store is None:
        if settings.search.backend == "milvus":
            from src.indexing.milvus_ops import MilvusChunkStore
            _store = MilvusChunkStore()
        else:
            _store = SqlChunkStore()
    return _store


def set_chunk_store(store: Optional[ChunkStore]) -> None:
    global _store
    _store = store
