"""
Prometheus metrics definitions.

All pipeline metrics live here; components reference them through
`from src.observability import metrics`.
"""

from prometheus_client import Counter, Gauge, Histogram, Info


class _Metrics:
    """Central registry of Prometheus metrics"""

    def __init__(self):
        # ── HTTP ──
        self.http_requests_total = Counter(
            "migrate_http_requests_total",
            "HTTP requests",
            ["method", "endpoint", "status_code"],
        )
        self.http_request_duration_seconds = Histogram(
            "migrate_http_request_duration_seconds",
            "HTTP request latency (s)",
            ["method", "endpoint"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ── Upload / index flow ──
        self.files_ingested_total = Counter(
            "migrate_files_ingested_total",
            "Uploaded files by outcome",
            ["status"],  # pending / skipped / extracted / failed
        )
        self.chunks_extracted_total = Counter(
            "migrate_chunks_extracted_total",
            "Chunks extracted",
            ["dialect"],
        )
        self.stage_duration_seconds = Histogram(
            "migrate_stage_duration_seconds",
            "Pipeline stage latency (s)",
            ["flow", "stage"],
            buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
        )

        # ── Embedding ──
        self.embed_requests_total = Counter(
            "migrate_embed_requests_total",
            "Embedding endpoint calls",
            ["provider", "outcome"],  # ok / retry / failed
        )
        self.embed_items_total = Counter(
            "migrate_embed_items_total",
            "Embedded chunks by outcome",
            ["outcome"],
        )

        # ── Retrieval ──
        self.similarity_queries_total = Counter(
            "migrate_similarity_queries_total",
            "Chunk similarity queries",
            ["backend"],
        )
        self.similarity_results = Histogram(
            "migrate_similarity_results",
            "Chunks returned per similarity query",
            ["backend"],
            buckets=(0, 1, 3, 5, 10, 20, 50, 100),
        )

        # ── LLM ──
        self.llm_requests_total = Counter(
            "migrate_llm_requests_total",
            "LLM calls",
            ["provider", "model"],
        )
        self.llm_duration_seconds = Histogram(
            "migrate_llm_duration_seconds",
            "LLM call latency (s)",
            ["provider", "model"],
            buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
        )
        self.llm_tokens_used = Counter(
            "migrate_llm_tokens_total",
            "LLM tokens",
            ["provider", "model", "direction"],  # direction: input / output
        )
        self.llm_errors_total = Counter(
            "migrate_llm_errors_total",
            "LLM call failures",
            ["provider", "model"],
        )

        # ── Transform ──
        self.chunks_transformed_total = Counter(
            "migrate_chunks_transformed_total",
            "Chunk transformations by outcome",
            ["target", "outcome"],  # ok / failed
        )

        # ── Queue ──
        self.jobs_enqueued_total = Counter(
            "migrate_jobs_enqueued_total",
            "Jobs enqueued",
            ["kind"],
        )
        self.jobs_finished_total = Counter(
            "migrate_jobs_finished_total",
            "Jobs finished by terminal status",
            ["kind", "status"],
        )
        self.jobs_retried_total = Counter(
            "migrate_jobs_retried_total",
            "Job retries scheduled",
            ["kind"],
        )
        self.queue_waiting = Gauge(
            "migrate_queue_waiting",
            "Jobs waiting in the queue",
        )
        self.queue_active = Gauge(
            "migrate_queue_active",
            "Jobs leased by a worker",
        )

        # ── System ──
        self.app_info = Info(
            "migrate_app",
            "Application metadata",
        )


# singleton
metrics = _Metrics()
