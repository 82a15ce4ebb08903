"""
Exception hierarchy for the message pump.

Only ConfigurationError and PumpStateError escape to callers of the pump;
everything else is routed through the retry/poison path or logged.
"""


class QueuePumpError(Exception):
    """Base class for all queuepump errors."""


class ConfigurationError(QueuePumpError, ValueError):
    """Raised for invalid construction parameters or a missing message hook."""


class PumpStateError(QueuePumpError):
    """Raised when a lifecycle operation is not valid in the current state."""


class TransientFetchError(QueuePumpError):
    """Raised when fetching from the queue fails; retried after a backoff."""


class LeaseLostError(QueuePumpError):
    """Raised when deleting a message whose lease is no longer held."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class ProcessingError(QueuePumpError):
    """A message could not be processed; classified as poison or retryable."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class DispatchError(ProcessingError):
    """No handler is registered for a message type, or its payload is invalid."""


class OverflowStoreError(ProcessingError):
    """Reading or writing an overflow blob failed."""
