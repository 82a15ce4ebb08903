"""
Storage module.
Contains the queue and blob store capabilities and the in-memory adapters.
"""

from queuepump.storage.base import BlobStore, QueueClient
from queuepump.storage.memory import InMemoryBlobStore, InMemoryQueueClient

__all__ = [
    "QueueClient",
    "BlobStore",
    "InMemoryQueueClient",
    "InMemoryBlobStore",
]
