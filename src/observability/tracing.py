"""
OpenTelemetry tracing setup.

Provides a global tracer:
    from src.observability import tracer
    with tracer.start_as_current_span("index.embed"):
        ...

Console export is enabled with MIGRATE_TRACE_CONSOLE=1; production swaps in
an OTLP exporter on the same provider.
"""

import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

SERVICE_NAME = "code-migrate"
SERVICE_VERSION = "0.1.0"

_resource = Resource.create({"service.name": SERVICE_NAME, "service.version": SERVICE_VERSION})

_provider = TracerProvider(resource=_resource)

if os.getenv("MIGRATE_TRACE_CONSOLE", "0") == "1":
    _provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

trace.set_tracer_provider(_provider)

tracer = trace.get_tracer(SERVICE_NAME, SERVICE_VERSION)
