"""
Type definitions for the message pump.
"""

from queuepump.types.message import (
    Envelope,
    QueueMessage,
    ReceivedMessage,
)

__all__ = [
    "QueueMessage",
    "Envelope",
    "ReceivedMessage",
]
