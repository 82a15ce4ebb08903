"""
OpenTelemetry tracing setup and the message processing span.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
)
from opentelemetry.trace import Span, Tracer

from queuepump import __version__
from queuepump.config import get_settings
from queuepump.constants import SPAN_PROCESS_MESSAGE

logger = logging.getLogger(__name__)

# Set by setup_tracing(); None means the API tracer of the global provider
_tracer: Tracer | None = None


def setup_tracing(
    enable_console_export: bool = False,
    exporters: list[SpanExporter] | None = None,
) -> Tracer:
    """
    Install a tracer provider exporting the pump's spans.

    Args:
        enable_console_export: Also print spans to the console.
        exporters: Exporters to use instead of OTLP to the configured endpoint.

    Returns:
        Tracer: The tracer used for message processing spans.
    """
    global _tracer

    settings = get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )

    if exporters is None:
        try:
            exporters = [
                OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
            ]
        except Exception:
            logger.warning("OTLP exporter unavailable, spans will not be exported", exc_info=True)
            exporters = []
    if enable_console_export:
        exporters = [*exporters, ConsoleSpanExporter()]

    for exporter in exporters:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name, __version__)
    return _tracer


def instrument_sqlalchemy(engine: Any) -> None:
    """
    Trace the SQL statements issued by the SQL queue and blob store.

    Args:
        engine: The SQLAlchemy (sync) engine instance.
    """
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer() -> Tracer:
    """
    Get the tracer instance.

    Before setup_tracing() is called this is the OpenTelemetry API tracer,
    which does nothing until a provider is installed.
    """
    if _tracer is None:
        return trace.get_tracer("queuepump")
    return _tracer


@contextmanager
def message_span(queue_name: str, message_id: str, dequeue_count: int) -> Iterator[Span]:
    """Span covering the processing of one delivery of a message."""
    with get_tracer().start_as_current_span(
        SPAN_PROCESS_MESSAGE,
        kind=trace.SpanKind.CONSUMER,
        attributes={
            "messaging.destination.name": queue_name,
            "messaging.message.id": message_id,
            "dequeue_count": dequeue_count,
        },
    ) as span:
        yield span
