"""
Monitoring module for the retention daemon.

Exports retention state (store footprint, table usage, cleanup activity and
capacity predictions) as Prometheus metrics.
"""

from .metrics_collector import MetricsCollector
from .retention_metrics import RetentionMetricsCollector

__all__ = [
    'MetricsCollector',
    'RetentionMetricsCollector',
]
