"""
Retention metrics collector.

Publishes store footprint, per-table usage, job activity, cleanup totals and
capacity predictions from a ``RetentionManager`` as Prometheus metrics.
"""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import psutil
from prometheus_client import CollectorRegistry

from ..storage.retention_manager import RetentionManager
from .metrics_collector import MetricsCollector


class RetentionMetricsCollector(MetricsCollector):
    """Exports the state of one retention manager."""

    def __init__(self, manager: RetentionManager, registry: Optional[CollectorRegistry] = None):
        self.manager = manager
        self._seen_totals: Dict[Tuple[str, str], int] = {}
        super().__init__(registry)

    def _initialize_metrics(self) -> None:
        # Store
        self.store_footprint_bytes = self.create_gauge(
            'retention_store_footprint_bytes',
            'Database plus WAL and shared-memory file sizes'
        )
        self.store_file_bytes = self.create_gauge(
            'retention_store_file_bytes',
            'Size of each store file',
            ['file']
        )
        self.fragmentation_percent = self.create_gauge(
            'retention_store_fragmentation_percent',
            'Free pages as a percentage of all pages'
        )
        self.filesystem_free_bytes = self.create_gauge(
            'retention_filesystem_free_bytes',
            'Free space on the filesystem holding the store'
        )

        # Tables
        self.table_rows = self.create_gauge(
            'retention_table_rows',
            'Rows per table',
            ['table']
        )
        self.table_bytes = self.create_gauge(
            'retention_table_bytes',
            'Estimated bytes per table',
            ['table']
        )

        # Jobs and cleanups
        self.active_jobs = self.create_gauge(
            'retention_active_jobs',
            'Cleanup jobs queued or running'
        )
        self.cleanup_operations_total = self.create_counter(
            'retention_cleanup_operations_total',
            'Finished cleanup operations',
            ['data_type']
        )
        self.cleanup_records_total = self.create_counter(
            'retention_cleanup_records_deleted_total',
            'Rows removed by cleanup',
            ['data_type']
        )
        self.cleanup_bytes_total = self.create_counter(
            'retention_cleanup_bytes_freed_total',
            'Bytes freed by cleanup',
            ['data_type']
        )

        # Predictions
        self.predicted_size_bytes = self.create_gauge(
            'retention_predicted_size_bytes',
            'Predicted store size',
            ['timeframe']
        )
        self.prediction_confidence = self.create_gauge(
            'retention_prediction_confidence_percent',
            'Confidence of the size prediction',
            ['timeframe']
        )

    def _advance(self, counter, data_type: str, kind: str, total: int):
        """Increment a counter by the growth of a persisted running total."""
        key = (data_type, kind)
        delta = total - self._seen_totals.get(key, 0)
        if delta > 0:
            counter.labels(data_type=data_type).inc(delta)
        self._seen_totals[key] = total

    async def collect_metrics(self) -> Dict[str, Any]:
        usage = (await self.manager.get_usage_metrics()).usage
        stats = await self.manager.get_database_statistics()

        self.store_footprint_bytes.set(usage.footprint)
        self.store_file_bytes.labels(file='main').set(usage.total_size)
        self.store_file_bytes.labels(file='wal').set(usage.wal_size)
        self.store_file_bytes.labels(file='shm').set(usage.shm_size)
        self.fragmentation_percent.set(stats.fragmentation_level)

        db_dir = Path(self.manager.db_path).resolve().parent
        if db_dir.exists():
            self.filesystem_free_bytes.set(psutil.disk_usage(str(db_dir)).free)

        for table in usage.per_table:
            if table.record_count is not None:
                self.table_rows.labels(table=table.table_name).set(table.record_count)
            if table.size_bytes is not None:
                self.table_bytes.labels(table=table.table_name).set(
                    table.size_bytes + (table.index_size_bytes or 0)
                )

        active = self.manager.get_active_jobs()
        self.active_jobs.set(len(active))

        totals = self.manager.audit.cleanup_totals()
        for data_type, total in totals.items():
            self._advance(self.cleanup_operations_total, data_type, 'operations', total['operations'])
            self._advance(self.cleanup_records_total, data_type, 'records', total['records'])
            self._advance(self.cleanup_bytes_total, data_type, 'bytes', total['bytes'])

        predictions = self.manager.get_predictions()
        for prediction in predictions:
            self.predicted_size_bytes.labels(timeframe=prediction.timeframe).set(
                prediction.predicted_size_bytes
            )
            self.prediction_confidence.labels(timeframe=prediction.timeframe).set(
                prediction.confidence_level
            )

        return {
            'footprint_bytes': usage.footprint,
            'tables': len(usage.per_table),
            'active_jobs': len(active),
            'cleanup_totals': totals,
            'predictions': len(predictions),
        }
