"""
Poison/retry classification and empty-queue backoff.
"""

from queuepump.constants import FailureDisposition
from queuepump.exceptions import ConfigurationError


class PoisonPolicy:
    """
    Classifies a processing failure using only the queue's dequeue count.

    A failure is terminal once the message has been delivered more often than
    max_dequeue_attempts; otherwise the message is left for the lease to expire
    and the queue to redeliver it.
    """

    def __init__(self, max_dequeue_attempts: int):
        if max_dequeue_attempts < 1:
            raise ConfigurationError("max_dequeue_attempts must be >= 1")
        self.max_dequeue_attempts = max_dequeue_attempts

    def classify(self, dequeue_count: int) -> FailureDisposition:
        """Return POISON or RETRY for a failure on the given delivery."""
        if dequeue_count > self.max_dequeue_attempts:
            return FailureDisposition.POISON
        return FailureDisposition.RETRY

    def is_poison(self, dequeue_count: int) -> bool:
        return self.classify(dequeue_count) == FailureDisposition.POISON


class EmptyQueueBackoff:
    """
    Capped exponential delay between fetches of an empty queue.

    Each worker owns one. The delay doubles on every consecutive empty fetch,
    never exceeds max_delay, and resets as soon as a fetch returns messages.
    """

    def __init__(self, base_delay: float, max_delay: float):
        if base_delay <= 0 or max_delay < base_delay:
            raise ConfigurationError("backoff requires 0 < base_delay <= max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._consecutive = 0

    @property
    def consecutive_empty(self) -> int:
        return self._consecutive

    def next_delay(self) -> float:
        """Record one more empty fetch and return how long to wait."""
        self._consecutive += 1
        # Stop doubling once past the cap so the exponent cannot overflow
        exponent = min(self._consecutive - 1, 32)
        return min(self.base_delay * (2**exponent), self.max_delay)

    def reset(self) -> None:
        self._consecutive = 0
