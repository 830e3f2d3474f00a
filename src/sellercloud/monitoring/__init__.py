"""
Monitoring module for metrics and observability.
"""

from .prometheus_metrics import PrometheusMetrics, get_metrics

__all__ = [
    "PrometheusMetrics",
    "get_metrics",
]
