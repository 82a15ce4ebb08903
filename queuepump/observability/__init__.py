"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from queuepump.observability.logging import get_logger, setup_logging
from queuepump.observability.metrics import MetricsSink, PrometheusMetricsSink
from queuepump.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "get_logger",
    "MetricsSink",
    "PrometheusMetricsSink",
    "setup_tracing",
    "get_tracer",
]
