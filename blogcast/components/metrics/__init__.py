"""
Metrics components.
"""

from blogcast.components.metrics.collector import MetricsCollector
from blogcast.components.metrics.prometheus import (
    MetricType,
    PrometheusFormatter,
    get_prometheus_formatter,
)

__all__ = [
    "MetricsCollector",
    "MetricType",
    "PrometheusFormatter",
    "get_prometheus_formatter",
]
