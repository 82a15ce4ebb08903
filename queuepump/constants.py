"""
Application constants.
Centralized location for all constant values used across the package.
"""

from enum import StrEnum


class PumpState(StrEnum):
    """
    Message pump lifecycle states.

    State transitions:
    - IDLE -> RUNNING (start)
    - RUNNING -> STOPPING (first stop request)
    - STOPPING -> STOPPED (every worker exited)
    - IDLE -> STOPPED (stop before start)
    """

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class FailureDisposition(StrEnum):
    """Outcome of classifying a processing failure."""

    RETRY = "retry"
    POISON = "poison"


class EnvelopeKind(StrEnum):
    """How an envelope carries its payload."""

    INLINE = "inline"
    OVERFLOW = "overflow"


# Default values
DEFAULT_CONCURRENCY = 1
DEFAULT_MAX_MESSAGES_PER_FETCH = 10
DEFAULT_VISIBILITY_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_DEQUEUE_ATTEMPTS = 3
DEFAULT_EMPTY_BACKOFF_BASE_SECONDS = 0.1
DEFAULT_EMPTY_BACKOFF_MAX_SECONDS = 5.0
DEFAULT_METRICS_INTERVAL_SECONDS = 10.0

# Largest encoded envelope kept inline in the queue; larger payloads go to the blob store
MAX_INLINE_MESSAGE_BYTES = 64 * 1024
DEFAULT_OVERFLOW_CONTAINER = "oversize-messages"

# Metrics names
METRICS_NAMESPACE = "queuepump"
METRIC_MESSAGES_PROCESSED = "messages_processed"
METRIC_MESSAGES_FAILED = "messages_failed"
METRIC_MESSAGES_POISONED = "messages_poisoned"
METRIC_MESSAGE_PROCESSING_TIME = "message_processing_time"
METRIC_MESSAGE_FETCH_TIME = "message_fetch_time"
METRIC_QUEUE_EMPTY_COUNT = "queue_empty_count"
METRIC_QUEUED_MESSAGES = "queued_messages_approx"

# Trace span names
SPAN_PROCESS_MESSAGE = "process_message"
