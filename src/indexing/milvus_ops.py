"""
Milvus-backed chunk store.

Chunk rows (code, metadata, embedding) stay in SQL; every embedded chunk is
also upserted into a Milvus collection with chunk_id as primary key so
similarity search runs on the native COSINE index.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from pymilvus import DataType, MilvusClient

from config.settings import settings
from src.core.errors import StoreError
from src.core.models import ChunkFilter, ScoredChunk
from src.indexing.chunk_store import SqlChunkStore
from src.log import get_logger
from src.observability import metrics

logger = get_logger(__name__)


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_filter_expr(session_id: str, chunk_filter: Optional[ChunkFilter] = None) -> str:
    """Milvus boolean expression equivalent of ChunkFilter (logical_path excluded)."""
    clauses = [f"session_id == {_quote(session_id)}"]
    f = chunk_filter
    if f is not None:
        if f.kinds:
            clauses.append("kind in [" + ", ".join(_quote(k) for k in f.kinds) + "]")
        if f.dialect:
            clauses.append(f"dialect == {_quote(f.dialect)}")
        if f.min_complexity is not None:
            clauses.append(f"complexity >= {int(f.min_complexity)}")
        if f.max_complexity is not None:
            clauses.append(f"complexity <= {int(f.max_complexity)}")
        if f.is_async is not None:
            clauses.append(f"is_async == {'true' if f.is_async else 'false'}")
    return " and ".join(clauses)


class MilvusChunkStore(SqlChunkStore):
    """SqlChunkStore with vectors mirrored to Milvus for search."""

    def __init__(
        self,
        uri: Optional[str] = None,
        collection: Optional[str] = None,
        dimension: Optional[int] = None,
        client: Optional[MilvusClient] = None,
    ):
        super().__init__(dimension=dimension)
        self.uri = uri or settings.search.milvus_uri
        self.collection = collection or settings.search.milvus_collection
        self._client = client
        self._ready = False

    @property
    def client(self) -> MilvusClient:
        if self._client is None:
            self._client = MilvusClient(uri=self.uri)
        return self._client

    def ensure_collection(self, recreate: bool = False) -> None:
        """chunk_id primary key so re-indexing upserts in place."""
        if self._ready and not recreate:
            return
        if self.client.has_collection(self.collection):
            if not recreate:
                self._ready = True
                return
            self.client.drop_collection(self.collection)

        schema = self.client.create_schema(auto_id=False, enable_dynamic_field=False)
        schema.add_field("chunk_id", DataType.VARCHAR, is_primary=True, max_length=128)
        schema.add_field("session_id", DataType.VARCHAR, max_length=128)
        schema.add_field("kind", DataType.VARCHAR, max_length=32)
        schema.add_field("dialect", DataType.VARCHAR, max_length=32)
        schema.add_field("complexity", DataType.INT32)
        schema.add_field("is_async", DataType.BOOL)
        schema.add_field("vector", DataType.FLOAT_VECTOR, dim=self.dimension)
        index_params = self.client.prepare_index_params()
        index_params.add_index(field_name="vector", index_type="AUTOINDEX", metric_type="COSINE")
        self.client.create_collection(collection_name=self.collection, schema=schema, index_params=index_params)
        logger.info("[milvus] collection '%s' created (dim=%d)", self.collection, self.dimension)
        self._ready = True

    def attach_embeddings(self, chunk_ids: Sequence[str], vectors: Sequence[Sequence[float]], model: str) -> int:
        updated = super().attach_embeddings(chunk_ids, vectors, model)
        by_id = {c.chunk_id: c for c in (self.get_chunk(cid) for cid in chunk_ids) if c is not None}
        data = [
            {
                "chunk_id": cid,
                "session_id": by_id[cid].session_id,
                "kind": by_id[cid].kind,
                "dialect": by_id[cid].dialect,
                "complexity": by_id[cid].complexity,
                "is_async": by_id[cid].is_async,
                "vector": [float(x) for x in vec],
            }
            for cid, vec in zip(chunk_ids, vectors)
            if cid in by_id
        ]
        if data:
            self.ensure_collection()
            try:
                self.client.upsert(collection_name=self.collection, data=data)
            except Exception as e:
                raise StoreError(f"milvus upsert failed: {e}") from e
        return updated

    def mark_embed_failed(self, chunk_ids: Sequence[str]) -> int:
        updated = super().mark_embed_failed(chunk_ids)
        if chunk_ids:
            self.ensure_collection()
            self.client.delete(collection_name=self.collection, ids=list(chunk_ids))
        return updated

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
        if top_k <= 0:
            return []
        threshold = settings.search.similarity_threshold if threshold is None else threshold
        self.ensure_collection()
        try:
            hits = self.client.search(
                collection_name=self.collection,
                data=[[float(x) for x in query_vector]],
                filter=build_filter_expr(session_id, chunk_filter),
                limit=top_k + 1 if exclude_chunk_id else top_k,
                output_fields=["chunk_id"],
                search_params={"metric_type": "COSINE"},
            )
        except Exception as e:
            raise StoreError(f"milvus search failed: {e}") from e

        scored: List[ScoredChunk] = []
        for hit in (hits[0] if hits else []):
            cid = hit.get("id") or (hit.get("entity") or {}).get("chunk_id")
            sim = float(hit.get("distance", 0.0))
            if cid == exclude_chunk_id or sim < threshold:
                continue
            chunk = self.get_chunk(cid)
            if chunk is None or not chunk.embedding:
                continue
            if chunk_filter is not None and not chunk_filter.matches(chunk):
                continue
            scored.append(ScoredChunk(chunk=chunk, similarity=sim))
        scored.sort(key=lambda sc: (-sc.similarity, sc.chunk.chunk_id))
        metrics.similarity_queries_total.labels(backend="milvus").inc()
        metrics.similarity_results.labels(backend="milvus").observe(min(len(scored), top_k))
        return scored[:top_k]

    def delete_file(self, session_id: str, file_id: str) -> List[str]:
        ids = super().delete_file(session_id, file_id)
        if ids:
            self.ensure_collection()
            try:
                self.client.delete(collection_name=self.collection, ids=ids)
            except Exception as e:
                raise StoreError(f"milvus delete failed: {e}") from e
        return ids

    def delete_session(self, session_id: str) -> int:
        deleted = super().delete_session(session_id)
        self.ensure_collection()
        try:
            self.client.delete(collection_name=self.collection, filter=f"session_id == {_quote(session_id)}")
        except Exception as e:
            raise StoreError(f"milvus delete failed: {e}") from e
        return deleted

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
