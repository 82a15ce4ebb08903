"""
Concurrent consumer engine for durable at-least-once message queues.

Pulls messages with a bounded pool of workers, classifies failures as
retryable or poison from the queue's dequeue count, and overflows oversized
payloads to a blob store transparently.
"""

__version__ = "1.0.0"
