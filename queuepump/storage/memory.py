"""
In-memory queue and blob store.

The queue honours leases and visibility timeouts the way a durable queue
does, so a pump behaves against it exactly as against the real thing.
Useful for tests and local runs; nothing is persisted.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from queuepump.exceptions import LeaseLostError
from queuepump.types.message import QueueMessage

logger = logging.getLogger(__name__)


@dataclass
class StoredMessage:
    """A message at rest in the in-memory queue. All fields are plain and mutable."""

    id: str
    body: bytes
    inserted_at: datetime
    visible_at: float
    dequeue_count: int = 0
    lease_token: str | None = None


class InMemoryQueueClient:
    """
    In-process queue with lease-based fetch.

    Call counters (fetch_calls, delete_calls, enqueue_calls) are exposed for
    assertions in tests.
    """

    def __init__(self, name: str = "default", clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._clock = clock
        self.messages: dict[str, StoredMessage] = {}
        self.fetch_calls = 0
        self.delete_calls = 0
        self.enqueue_calls = 0

    @property
    def message_count(self) -> int:
        """Number of messages in the queue, visible or not."""
        return len(self.messages)

    async def create_if_not_exists(self) -> None:
        return None

    async def clear(self) -> None:
        self.messages.clear()

    async def enqueue_message(
        self,
        body: bytes,
        initial_visibility_delay_seconds: float = 0.0,
    ) -> str:
        self.enqueue_calls += 1
        message_id = str(uuid4())
        self.messages[message_id] = StoredMessage(
            id=message_id,
            body=bytes(body),
            inserted_at=datetime.now(timezone.utc),
            visible_at=self._clock() + initial_visibility_delay_seconds,
        )
        return message_id

    async def fetch_batch(
        self,
        max_count: int,
        visibility_timeout_seconds: float,
    ) -> list[QueueMessage]:
        self.fetch_calls += 1
        # Behave like I/O: let other tasks run between fetches
        await asyncio.sleep(0)

        now = self._clock()
        visible = [m for m in self.messages.values() if m.visible_at <= now]
        visible.sort(key=lambda m: m.inserted_at)

        leased = []
        for stored in visible[:max_count]:
            stored.dequeue_count += 1
            stored.lease_token = uuid4().hex
            stored.visible_at = now + visibility_timeout_seconds
            leased.append(
                QueueMessage(
                    id=stored.id,
                    lease_token=stored.lease_token,
                    body=stored.body,
                    dequeue_count=stored.dequeue_count,
                    inserted_at=stored.inserted_at,
                    next_visible_at=datetime.now(timezone.utc)
                    + timedelta(seconds=visibility_timeout_seconds),
                )
            )
        return leased

    async def delete_message(self, message_id: str, lease_token: str) -> None:
        self.delete_calls += 1
        stored = self.messages.get(message_id)
        if stored is None or stored.lease_token != lease_token:
            raise LeaseLostError(
                f"Lease on message {message_id} is no longer held",
                message_id=message_id,
            )
        del self.messages[message_id]

    async def get_approximate_message_count(self) -> int:
        return len(self.messages)


class InMemoryBlobStore:
    """Dict-backed blob store."""

    def __init__(self, container: str = "default"):
        self.container = container
        self.blobs: dict[str, bytes] = {}
        self.put_calls = 0
        self.delete_calls = 0

    async def create_if_not_exists(self) -> None:
        return None

    async def put(self, key: str, data: bytes) -> None:
        self.put_calls += 1
        self.blobs[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        return self.blobs[key]

    async def delete(self, key: str) -> None:
        self.delete_calls += 1
        self.blobs.pop(key, None)
