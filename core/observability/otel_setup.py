"""
SyncHub OpenTelemetry Setup

Production observability:
- Traces for sync runs (one span per entity sync)
- Traces for inbound webhooks (one span per request)
- Logs correlated through the request id filter
"""
from __future__ import annotations
from contextlib import contextmanager, nullcontext
from typing import Any, Iterator, Optional
import os


def setup_otel(
    service_name: str = "synchub",
    endpoint: Optional[str] = None,
):
    """Initialize OpenTelemetry with OTLP exporter."""
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource

        resource = Resource.create({"service.name": service_name})
        provider = TracerProvider(resource=resource)

        otlp_endpoint = endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
        if otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
            exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            provider.add_span_processor(BatchSpanProcessor(exporter))

        trace.set_tracer_provider(provider)
        return trace.get_tracer(service_name)

    except ImportError:
        # Graceful degradation if OTEL not installed
        return None


@contextmanager
def start_span(tracer, name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Span context manager that is a no-op without a tracer."""
    if tracer is None:
        with nullcontext() as span:
            yield span
        return
    with tracer.start_as_current_span(name, attributes=attributes or {}) as span:
        yield span


def set_span_attributes(span, **attributes: Any) -> None:
    if span is None:
        return
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)
