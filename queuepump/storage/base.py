"""
Queue and blob store capabilities consumed by the pump.

Any object with these async methods can back a pump; see
queuepump.storage.memory and queuepump.db for the bundled adapters.
"""

from typing import Protocol, Sequence, runtime_checkable

from queuepump.types.message import QueueMessage


@runtime_checkable
class QueueClient(Protocol):
    """Durable at-least-once queue with lease-based fetch."""

    async def fetch_batch(
        self,
        max_count: int,
        visibility_timeout_seconds: float,
    ) -> Sequence[QueueMessage]:
        """
        Lease up to max_count visible messages.

        An empty sequence is a valid result. Each returned message has its
        dequeue_count incremented and stays hidden for the visibility timeout.
        """
        ...

    async def delete_message(self, message_id: str, lease_token: str) -> None:
        """Delete a leased message. Raises LeaseLostError if the lease is gone."""
        ...

    async def enqueue_message(
        self,
        body: bytes,
        initial_visibility_delay_seconds: float = 0.0,
    ) -> str:
        """Add a message and return its id."""
        ...

    async def create_if_not_exists(self) -> None:
        ...

    async def clear(self) -> None:
        ...

    async def get_approximate_message_count(self) -> int:
        ...


@runtime_checkable
class BlobStore(Protocol):
    """Key-addressed blob storage for oversized payloads."""

    async def put(self, key: str, data: bytes) -> None:
        ...

    async def get(self, key: str) -> bytes:
        """Read a blob. Raises KeyError if it does not exist."""
        ...

    async def delete(self, key: str) -> None:
        ...

    async def create_if_not_exists(self) -> None:
        ...
