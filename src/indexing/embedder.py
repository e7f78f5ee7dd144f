"""
Chunk embedding client.

Batches chunks against the provider's embedding endpoint, paces batches,
retries rate-limited and transient failures with exponential backoff plus
jitter, and reports a per-chunk result. A vector whose length is not the
configured dimension fails that chunk only.
"""

from __future__ import annotations

import hashlib
import random
import re
import time
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from config.settings import EmbeddingSettings, settings
from src.core.errors import Cancelled, EmbedError, ErrorCode, ItemError, ProviderError
from src.core.models import Chunk, EmbeddingResult
from src.llm.llm_manager import Provider, get_manager
from src.log import get_logger
from src.observability import metrics, tracer
from src.utils.cache import TTLCache, make_key

logger = get_logger(__name__)

RETRYABLE = frozenset({ErrorCode.RATE_LIMITED, ErrorCode.TRANSIENT})

_WS_RE = re.compile(r"\s+")


def build_embedding_text(
    chunk: Chunk,
    before: Sequence[Chunk] = (),
    after: Sequence[Chunk] = (),
    include_metadata: bool = True,
    max_chars: int = 8000,
) -> str:
    """Metadata header + neighbor signatures + code, whitespace-collapsed and truncated."""
    parts: List[str] = []
    if include_metadata:
        params = ", ".join(p.name for p in chunk.parameters) or "none"
        parts.append(
            f"{chunk.kind} {chunk.name} | params: {params} | complexity: {chunk.complexity} | dialect: {chunk.dialect}"
        )
    if before or after:
        ctx = [f"before: {c.signature()}" for c in before] + [f"after: {c.signature()}" for c in after]
        parts.append("context: " + "; ".join(ctx))
    parts.append(chunk.code)
    text = _WS_RE.sub(" ", "\n".join(parts)).strip()
    return text[:max_chars]


def pseudo_vector(text: str, dimension: int) -> List[float]:
    """Deterministic unit vector derived from the text hash (dry-run mode)."""
    seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
    vec = np.random.RandomState(seed).standard_normal(dimension)
    vec /= np.linalg.norm(vec) or 1.0
    return vec.astype(float).tolist()


class EmbeddingClient:
    """
    Embedding endpoint client.

    ``provider`` and ``sleep`` are injectable; without a provider the client is
    built from settings (or runs in dry-run mode when ``llm.dry_run`` is set).
    """

    def __init__(
        self,
        provider: Optional[Provider] = None,
        config: Optional[EmbeddingSettings] = None,
        dry_run: Optional[bool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or settings.embedding
        self.dry_run = settings.llm.dry_run if dry_run is None else dry_run
        self._provider = provider
        self._sleep = sleep
        self._query_cache = TTLCache(maxsize=self.config.query_cache_size, ttl_seconds=0)

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def provider(self) -> Provider:
        if self._provider is None:
            self._provider = get_manager().get_provider(self.config.provider)
        return self._provider

    @property
    def provider_name(self) -> str:
        if self.dry_run:
            return "dry_run"
        return self._provider.config.name if self._provider else self.config.provider

    def close(self) -> None:
        if self._provider is not None:
            self._provider._session.close()

    # ── public API ──

    def embed(
        self,
        chunks: Sequence[Chunk],
        on_batch: Optional[Callable[[List[EmbeddingResult]], None]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> List[EmbeddingResult]:
        """
        Embed *chunks* in input order; one result per chunk.

        on_batch receives each batch's results as soon as they arrive.
        cancel_check is polled between batches; a True raises Cancelled.
        """
        if not chunks:
            return []
        texts = self._texts_with_context(chunks)
        size = self.config.batch_size
        results: List[EmbeddingResult] = []

        for start in range(0, len(chunks), size):
            if start > 0:
                if cancel_check and cancel_check():
                    raise Cancelled("Embedding cancelled between batches")
                self._sleep(self.config.batch_delay_ms / 1000.0)

            batch = list(chunks[start:start + size])
            batch_texts = texts[start:start + size]
            with tracer.start_as_current_span("embed.batch", attributes={"embed.batch_size": len(batch)}):
                batch_results = self._embed_batch(batch, batch_texts)
            results.extend(batch_results)
            if on_batch:
                on_batch(batch_results)

        ok = sum(1 for r in results if r.ok)
        logger.info("[embed] %d/%d chunks embedded (model=%s)", ok, len(results), self.model)
        return results

    def embed_query(self, text: str) -> List[float]:
        """Embed a free-text query; cached per process. Raises EmbedError."""
        text = _WS_RE.sub(" ", text).strip()[: self.config.max_text_chars]
        key = make_key("query", self.model, text)
        cached = self._query_cache.get(key)
        if cached is not None:
            return cached
        vectors = self._call_with_retry([text])
        vec = vectors[0]
        if len(vec) != self.dimension:
            raise EmbedError(
                ErrorCode.DIMENSION_MISMATCH,
                f"Query vector has {len(vec)} dimensions, expected {self.dimension}",
            )
        self._query_cache.set(key, vec)
        return vec

    # ── internals ──

    def _texts_with_context(self, chunks: Sequence[Chunk]) -> List[str]:
        k = max(0, self.config.neighbor_context)
        by_file: Dict[str, List[int]] = {}
        for i, c in enumerate(chunks):
            by_file.setdefault(c.logical_path, []).append(i)

        texts: List[str] = [""] * len(chunks)
        for indices in by_file.values():
            siblings = [chunks[i] for i in indices]
            for pos, i in enumerate(indices):
                before = siblings[max(0, pos - k):pos] if k else []
                after = siblings[pos + 1:pos + 1 + k] if k else []
                texts[i] = build_embedding_text(
                    chunks[i], before, after,
                    include_metadata=self.config.include_metadata,
                    max_chars=self.config.max_text_chars,
                )
        return texts

    def _embed_batch(self, batch: List[Chunk], texts: List[str]) -> List[EmbeddingResult]:
        try:
            vectors = self._call_with_retry(texts)
        except ProviderError as e:
            logger.warning("[embed] batch of %d failed: %s", len(batch), e)
            metrics.embed_items_total.labels(outcome="failed").inc(len(batch))
            err = ItemError.from_exc("embed", e).to_dict()
            return [EmbeddingResult(chunk_id=c.chunk_id, error=dict(err, chunk_id=c.chunk_id)) for c in batch]

        results = []
        for chunk, vec in zip(batch, vectors):
            if len(vec) != self.dimension:
                err = ItemError(
                    scope="embed",
                    code=ErrorCode.DIMENSION_MISMATCH.value,
                    message=f"vector has {len(vec)} dimensions, expected {self.dimension}",
                ).to_dict()
                results.append(EmbeddingResult(chunk_id=chunk.chunk_id, error=dict(err, chunk_id=chunk.chunk_id)))
                metrics.embed_items_total.labels(outcome="failed").inc()
            else:
                results.append(EmbeddingResult(chunk_id=chunk.chunk_id, vector=[float(x) for x in vec]))
                metrics.embed_items_total.labels(outcome="ok").inc()
        return results

    def _call_with_retry(self, texts: List[str]) -> List[List[float]]:
        attempts = max(1, self.config.retries)
        for attempt in range(1, attempts + 1):
            try:
                vectors = self._request(texts)
                metrics.embed_requests_total.labels(provider=self.provider_name, outcome="ok").inc()
                return vectors
            except ProviderError as e:
                retryable = e.code in RETRYABLE
                if not retryable or attempt >= attempts:
                    metrics.embed_requests_total.labels(provider=self.provider_name, outcome="failed").inc()
                    if isinstance(e, EmbedError):
                        raise
                    raise EmbedError(e.code, e.message, status_code=getattr(e, "status_code", None)) from e
                delay_ms = self.config.base_delay_ms * (2 ** (attempt - 1)) + random.uniform(0, self.config.max_jitter_ms)
                logger.warning(
                    "[embed] attempt %d/%d failed (%s), retrying in %.0f ms",
                    attempt, attempts, e.code.value, delay_ms,
                )
                metrics.embed_requests_total.labels(provider=self.provider_name, outcome="retry").inc()
                self._sleep(delay_ms / 1000.0)
        raise EmbedError(ErrorCode.TRANSIENT, "embedding retries exhausted")

    def _request(self, texts: List[str]) -> List[List[float]]:
        """One endpoint call; vectors returned in input order."""
        if self.dry_run:
            return [pseudo_vector(t, self.dimension) for t in texts]

        payload = {"model": self.model, "input": texts}
        if self.config.dimension:
            payload["dimensions"] = self.config.dimension
        raw = self.provider.embed(
            payload,
            timeout=self.config.call_timeout_seconds,
            max_retries=0,
            error_cls=EmbedError,
        )
        data = raw.get("data") if isinstance(raw, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbedError(
                ErrorCode.INVALID_OUTPUT,
                f"Embedding response carried {len(data) if isinstance(data, list) else 0} vectors for {len(texts)} inputs",
            )
        ordered = sorted(data, key=lambda d: d.get("index", 0))
        return [list(d.get("embedding") or []) for d in ordered]


# ── process-wide instance ──

_client: Optional[EmbeddingClient] = None


def get_embedding_client() -> EmbeddingClient:
    global _client
    if _client is None:
        _client = EmbeddingClient()
    return _client
