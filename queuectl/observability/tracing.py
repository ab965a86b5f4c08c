"""
OpenTelemetry tracing setup.

Spans are always recorded so log lines carry trace ids; they are only
exported over OTLP when ``otel_enabled`` is set.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Tracer

from queuectl import __version__
from queuectl.config import Settings, get_settings

logger = logging.getLogger(__name__)

_tracer: Tracer | None = None


def _build_provider(settings: Settings) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )

    if not settings.otel_enabled:
        return provider

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
    except Exception:
        logger.warning(
            "OTLP exporter unavailable, spans will not be exported",
            extra={"endpoint": settings.otel_exporter_otlp_endpoint}
        )
    else:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_tracing() -> Tracer:
    """
    Install the tracer provider and return the queuectl tracer.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = get_settings()
    trace.set_tracer_provider(_build_provider(settings))
    _tracer = trace.get_tracer(settings.otel_service_name, __version__)
    return _tracer


def get_tracer() -> Tracer:
    """Get the tracer, setting tracing up on first use."""
    if _tracer is None:
        return setup_tracing()
    return _tracer


@contextmanager
def job_span(name: str, worker_id: str, job_id: str | None = None, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for one step of a job's lifecycle.

    Args:
        name: Span name.
        worker_id: Worker performing the step.
        job_id: Job the step belongs to, when already known.
        **attributes: Extra span attributes.
    """
    with get_tracer().start_as_current_span(name) as span:
        span.set_attribute("queuectl.worker_id", worker_id)
        if job_id is not None:
            span.set_attribute("queuectl.job_id", job_id)
        for key, value in attributes.items():
            span.set_attribute(f"queuectl.{key}", value)
        yield span


def instrument_fastapi(app: Any) -> None:
    """Trace every request handled by the operator API."""
    FastAPIInstrumentor.instrument_app(app)
