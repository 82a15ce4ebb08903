"""
Structured logging setup using structlog.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from queuepump.config import get_settings


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Add OpenTelemetry trace context to log records.

    Messages logged while a message is being processed carry the id of the
    process_message span.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Configure structured logging for the process.

    Sets up structlog with JSON or console output and routes standard library
    logging (used by the storage and codec modules) through the same renderer.
    Worker and message context bound by the pump is merged into both.

    Args:
        log_level: Overrides the configured level (e.g. "DEBUG").
        log_format: Overrides the configured format, "json" or "console".
    """
    settings = get_settings()
    level_name = (log_level or settings.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    output = log_format or settings.log_format

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    if output == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Engine echo and asyncio debug chatter drown out pump events
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def bind_worker_context(queue_name: str, worker_index: int) -> None:
    """
    Tag every event logged from the current worker task with its queue and index.

    Applies to standard library records as well, including those emitted by
    hooks and by tasks they spawn.
    """
    structlog.contextvars.bind_contextvars(queue=queue_name, worker=worker_index)


@contextmanager
def message_log_context(message_id: str, dequeue_count: int) -> Iterator[None]:
    """Tag events logged while one delivery is processed."""
    with structlog.contextvars.bound_contextvars(
        message_id=message_id,
        dequeue_count=dequeue_count,
    ):
        yield


def get_logger(name: str, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__).
        **initial_values: Key-value pairs bound to every event of this logger.

    Returns:
        BoundLogger: A structlog logger instance.
    """
    return structlog.get_logger(name, **initial_values)
