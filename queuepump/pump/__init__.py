"""
Pump module.
Contains the message pump, typed dispatch, overflow codec and retry policy.
"""

from queuepump.pump.dispatch import HandlerDispatch
from queuepump.pump.overflow import OverflowCodec
from queuepump.pump.policy import EmptyQueueBackoff, PoisonPolicy
from queuepump.pump.pump import MessagePump
from queuepump.pump.sender import MessageSender

__all__ = [
    "MessagePump",
    "HandlerDispatch",
    "OverflowCodec",
    "MessageSender",
    "PoisonPolicy",
    "EmptyQueueBackoff",
]
