"""
Base metrics collector for the retention daemon.

Provides the foundation for Prometheus metrics collection: a private
registry per collector, collection timing and error counting, and helpers
for creating metrics bound to that registry.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog
from prometheus_client import (
    CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest,
    start_http_server
)


class MetricsCollector(ABC):
    """
    Base class for all metrics collectors.

    Subclasses create their metrics in ``_initialize_metrics`` and refresh
    them in ``collect_metrics``; ``collect`` wraps the refresh with timing
    and error tracking.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional Prometheus registry. If None, a private registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.logger = structlog.get_logger(f"{self.__class__.__module__}.{self.__class__.__name__}")
        self._collection_start_time = time.time()
        self._last_collection_time = 0.0
        self._collection_count = 0

        collector_type = self.__class__.__name__.lower()
        self._collection_duration = Histogram(
            f'metrics_collection_duration_seconds_{collector_type}',
            'Time spent collecting metrics',
            registry=self.registry
        )
        self._collection_errors = Counter(
            f'metrics_collection_errors_total_{collector_type}',
            'Total number of metrics collection errors',
            ['error_type'],
            registry=self.registry
        )

        self._initialize_metrics()

    @abstractmethod
    def _initialize_metrics(self) -> None:
        """Initialize collector-specific metrics. Must be implemented by subclasses."""

    @abstractmethod
    async def collect_metrics(self) -> Dict[str, Any]:
        """
        Refresh metric values. Must be implemented by subclasses.

        Returns:
            Dictionary containing the collected values
        """

    async def collect(self) -> Dict[str, Any]:
        """Collect with duration and error tracking."""
        start_time = time.time()
        try:
            metrics_data = await self.collect_metrics()
        except Exception as e:
            self._collection_errors.labels(error_type=type(e).__name__).inc()
            self.logger.error("Error collecting metrics", error=str(e))
            raise

        duration = time.time() - start_time
        self._collection_duration.observe(duration)
        self._last_collection_time = time.time()
        self._collection_count += 1
        self.logger.debug("Metrics collected", count=len(metrics_data), duration_s=round(duration, 4))
        return metrics_data

    def get_registry(self) -> CollectorRegistry:
        return self.registry

    def export(self) -> bytes:
        """Current metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    @property
    def content_type(self) -> str:
        return CONTENT_TYPE_LATEST

    def start_http_server(self, port: int, addr: str = '0.0.0.0'):
        """Serve this collector's registry on ``/metrics``."""
        start_http_server(port, addr=addr, registry=self.registry)
        self.logger.info("Metrics server started", port=port)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Collection statistics for this collector."""
        uptime = time.time() - self._collection_start_time
        return {
            'collector_type': self.__class__.__name__,
            'uptime_seconds': uptime,
            'collection_count': self._collection_count,
            'last_collection_time': self._last_collection_time,
        }

    def create_counter(self, name: str, description: str,
                       labelnames: Optional[List[str]] = None) -> Counter:
        return Counter(name, description, labelnames or [], registry=self.registry)

    def create_histogram(self, name: str, description: str,
                         labelnames: Optional[List[str]] = None,
                         buckets: Optional[List[float]] = None) -> Histogram:
        if buckets is None:
            return Histogram(name, description, labelnames or [], registry=self.registry)
        return Histogram(name, description, labelnames or [], buckets=buckets, registry=self.registry)

    def create_gauge(self, name: str, description: str,
                     labelnames: Optional[List[str]] = None) -> Gauge:
        return Gauge(name, description, labelnames or [], registry=self.registry)
