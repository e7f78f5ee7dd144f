"""
Observability: OpenTelemetry tracing + Prometheus metrics.

Usage:
    from src.observability import setup_observability, metrics, tracer

    # in the FastAPI app factory
    setup_observability(app)

    # manual instrumentation
    with tracer.start_as_current_span("transform.chunk"):
        ...

    metrics.embed_items_total.labels(outcome="ok").inc()
"""

from src.observability.setup import setup_observability
from src.observability.metrics import metrics
from src.observability.tracing import tracer

__all__ = ["setup_observability", "metrics", "tracer"]
