"""
Message-related type definitions.
"""

from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from queuepump.constants import EnvelopeKind


@dataclass
class QueueMessage:
    """
    A message as leased from the queue.

    Owned by the queue; the pump only holds it while the lease is active.
    dequeue_count is maintained by the queue and incremented on every delivery.
    """

    id: str
    lease_token: str
    body: bytes
    dequeue_count: int
    inserted_at: datetime
    next_visible_at: datetime


class Envelope(BaseModel):
    """
    Wire representation of a payload inside a queue message body.

    Inline envelopes carry the base64 content; overflow envelopes only carry
    the key of the blob holding the content.
    """

    model_config = ConfigDict(frozen=True)

    kind: EnvelopeKind
    message_type: str | None = None
    content: str | None = None
    blob_key: str | None = None

    @property
    def is_overflow(self) -> bool:
        """Check if the payload lives in the blob store."""
        return self.kind == EnvelopeKind.OVERFLOW


@dataclass(frozen=True)
class ReceivedMessage:
    """
    Resolved message passed to message hooks.
    Overflow payloads have already been fetched into content.
    """

    id: str
    content: bytes
    message_type: str | None
    dequeue_count: int
    max_dequeue_attempts: int
    inserted_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure on this delivery is terminal (poison)."""
        return self.dequeue_count > self.max_dequeue_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get the number of redeliveries left after this one."""
        return max(0, self.max_dequeue_attempts - self.dequeue_count + 1)

    def text(self, encoding: str = "utf-8") -> str:
        """Decode the content as text."""
        return self.content.decode(encoding)
