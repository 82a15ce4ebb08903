"""
Metrics sinks.

MetricsSink is the no-op base; a pump without a configured sink uses it, so
metrics never affect processing. PrometheusMetricsSink records into
prometheus_client collectors.
"""

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

from queuepump.constants import (
    METRIC_MESSAGE_FETCH_TIME,
    METRIC_MESSAGE_PROCESSING_TIME,
    METRIC_MESSAGES_FAILED,
    METRIC_MESSAGES_POISONED,
    METRIC_MESSAGES_PROCESSED,
    METRIC_QUEUE_EMPTY_COUNT,
    METRIC_QUEUED_MESSAGES,
    METRICS_NAMESPACE,
)


class MetricsSink:
    """
    Observability hook for the pump. Every method is a no-op.

    Subclasses override increment, observe and set_gauge; timer is built on
    observe.
    """

    def increment(self, name: str, value: float = 1, *, queue: str = "") -> None:
        """Add value to a counter."""

    def observe(self, name: str, seconds: float, *, queue: str = "") -> None:
        """Record a duration."""

    def set_gauge(self, name: str, value: float, *, queue: str = "") -> None:
        """Set a gauge to value."""

    @contextmanager
    def timer(self, name: str, *, queue: str = "") -> Iterator[None]:
        """Time the enclosed block and record it with observe, even if it raises."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - start, queue=queue)


class PrometheusMetricsSink(MetricsSink):
    """
    Prometheus metrics for message pumps.

    Collects metrics for:
    - Messages processed, failed and rejected as poison
    - Message processing and fetch duration
    - Empty fetches
    - Approximate queue length
    """

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        namespace: str = METRICS_NAMESPACE,
    ):
        """
        Initialize the sink.

        Args:
            registry: Optional custom registry. Uses default if not provided.
            namespace: Prefix of every metric name.
        """
        self._registry = registry or REGISTRY

        self._counters: dict[str, Counter] = {
            METRIC_MESSAGES_PROCESSED: Counter(
                METRIC_MESSAGES_PROCESSED,
                "Total number of messages processed successfully",
                ["queue"],
                namespace=namespace,
                registry=self._registry,
            ),
            METRIC_MESSAGES_FAILED: Counter(
                METRIC_MESSAGES_FAILED,
                "Total number of failed processing attempts",
                ["queue"],
                namespace=namespace,
                registry=self._registry,
            ),
            METRIC_MESSAGES_POISONED: Counter(
                METRIC_MESSAGES_POISONED,
                "Total number of messages rejected as poison",
                ["queue"],
                namespace=namespace,
                registry=self._registry,
            ),
            METRIC_QUEUE_EMPTY_COUNT: Counter(
                METRIC_QUEUE_EMPTY_COUNT,
                "Total number of fetches that found the queue empty",
                ["queue"],
                namespace=namespace,
                registry=self._registry,
            ),
        }

        self._histograms: dict[str, Histogram] = {
            METRIC_MESSAGE_PROCESSING_TIME: Histogram(
                METRIC_MESSAGE_PROCESSING_TIME,
                "Message processing duration in seconds",
                ["queue"],
                unit="seconds",
                namespace=namespace,
                buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
                registry=self._registry,
            ),
            METRIC_MESSAGE_FETCH_TIME: Histogram(
                METRIC_MESSAGE_FETCH_TIME,
                "Message fetch duration in seconds",
                ["queue"],
                unit="seconds",
                namespace=namespace,
                buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
                registry=self._registry,
            ),
        }

        self._gauges: dict[str, Gauge] = {
            METRIC_QUEUED_MESSAGES: Gauge(
                METRIC_QUEUED_MESSAGES,
                "Approximate number of messages waiting in the queue",
                ["queue"],
                namespace=namespace,
                registry=self._registry,
            ),
        }

    def increment(self, name: str, value: float = 1, *, queue: str = "") -> None:
        counter = self._counters.get(name)
        if counter is not None:
            counter.labels(queue=queue).inc(value)

    def observe(self, name: str, seconds: float, *, queue: str = "") -> None:
        histogram = self._histograms.get(name)
        if histogram is not None:
            histogram.labels(queue=queue).observe(seconds)

    def set_gauge(self, name: str, value: float, *, queue: str = "") -> None:
        gauge = self._gauges.get(name)
        if gauge is not None:
            gauge.labels(queue=queue).set(value)

