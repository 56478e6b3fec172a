"""
Main retention manager - orchestrates the retention system.

This is the entry point used by the host application, the CLI and the
daemon. It wires the store, policies, monitoring, cleanup, vacuum and
scheduling components together and exposes their operations.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from .retention_cleanup import CleanupEngine
from .retention_config import RetentionConfigManager, resolve_paths
from .retention_database import StoreConnection, initialize_schema
from .retention_errors import ValidationError
from .retention_jobs import JobRegistry
from .retention_logging import AuditLog
from .retention_models import (
    CleanupEstimate, CleanupJob, CleanupOperation, DatabaseStatistics, DiskUsageMetrics,
    GrowthRate, OperationType, RetentionPolicy, StoragePrediction, TableUsage, UsageSnapshot,
    VacuumResult
)
from .retention_monitoring import UsageMetricsCollector
from .retention_policies import RetentionPolicyStore
from .retention_query import QueryResult, TableQuery, run_query
from .retention_scheduler import JobScheduler, SchedulerStatus
from .retention_trends import CapacityPredictor, GrowthAnalyzer
from .retention_vacuum import VacuumManager

logger = structlog.get_logger(__name__)


class RetentionManager:
    """
    Main retention manager that orchestrates all retention operations.

    All components share one ``StoreConnection``; the ``JobRegistry`` owned by
    the scheduler provides the per-data-type and global maintenance locks.
    """

    def __init__(self, db_path: str, config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.db_path = db_path
        self.config_path = config_path
        self.clock = clock

        self.config_manager = RetentionConfigManager(config_path, overrides)
        self.config = self.config_manager.config
        monitoring = self.config.storage_monitoring

        self.store = StoreConnection(db_path, enable_wal=monitoring.enable_wal)
        initialize_schema(self.store)

        self.audit = AuditLog(self.store)
        # A live cleanup finishes within its time limit plus one batch
        stale_after = timedelta(seconds=2 * self.config.cleanup.max_duration_seconds)
        self.audit.close_interrupted_cleanups(clock(), clock() - stale_after)
        self.registry = JobRegistry(clock)
        self.policies = RetentionPolicyStore(self.store, clock)
        self.collector = UsageMetricsCollector(self.store, clock)
        self.analyzer = GrowthAnalyzer(self.collector, monitoring, clock)
        self.predictor = CapacityPredictor(
            self.analyzer, Path(db_path), monitoring,
            total_space_bytes=self.config.global_settings.total_space_bytes,
            clock=clock,
        )
        self.cleanup = CleanupEngine(self.store, self.policies, self.collector, self.registry,
                                     self.audit, self.config_manager, clock)
        self.vacuum_manager = VacuumManager(self.store, self.collector, self.registry,
                                            self.audit, clock)
        self.scheduler = JobScheduler(self.cleanup, self.policies, self.registry,
                                      self.collector, self.config.scheduler, clock)

        # Defaults are written once here so reads never have side effects
        self.policies.seed_defaults(self.config_manager.get_default_policies())

        logger.info("Retention Manager initialized", db_path=str(db_path),
                    config_path=str(config_path) if config_path else None)

    # Usage

    async def get_usage_metrics(self) -> DiskUsageMetrics:
        """
        Current usage of the store with growth, predictions and free space.

        Nothing is recorded in the snapshot history.
        """
        usage = self.collector.measure()
        free_space, total_space = self.predictor.available_space(usage.footprint)
        latest = self.audit.cleanup_history(limit=1)
        last_cleanup = (latest[0].completed_at or latest[0].started_at) if latest else None
        return DiskUsageMetrics(
            usage=usage,
            growth_rates=self.analyzer.growth_rates(),
            predictions=self.predictor.predict(),
            last_cleanup=last_cleanup,
            free_space=free_space,
            total_space=total_space,
        )

    async def record_snapshot(self) -> UsageSnapshot:
        return await self.collector.snapshot()

    async def get_table_breakdown(self) -> List[TableUsage]:
        return self.collector.table_breakdown()

    async def get_database_statistics(self) -> DatabaseStatistics:
        return await self.collector.database_statistics()

    def get_growth_rates(self, window_days: Optional[int] = None) -> List[GrowthRate]:
        return self.analyzer.growth_rates(window_days)

    def get_predictions(self, days: Optional[int] = None,
                        total_space: Optional[int] = None) -> List[StoragePrediction]:
        """Capacity predictions using ``days`` of snapshot history as the growth window."""
        if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days <= 0):
            raise ValidationError(f"days must be a positive integer, got {days!r}")
        return self.predictor.predict(total_space, window_days=days)

    # Policies

    def list_retention_policies(self) -> List[RetentionPolicy]:
        return self.policies.list()

    def get_retention_policy(self, data_type: str) -> RetentionPolicy:
        return self.policies.get(data_type)

    def upsert_retention_policy(self, data_type: str, fields: Mapping[str, Any]) -> RetentionPolicy:
        return self.policies.upsert(data_type, fields)

    # Cleanup

    async def estimate_cleanup(self, data_type: str) -> CleanupEstimate:
        return await self.cleanup.estimate(data_type)

    async def perform_cleanup(self, data_type: str, force: bool = False) -> CleanupOperation:
        """
        Run a manual cleanup now.

        Raises ConflictError when a cleanup for the same data type or a vacuum
        is already running, ValidationError for a disabled policy unless
        ``force`` is set, and ExecutionError on store failures.
        """
        return await self.cleanup.execute(data_type, force=force,
                                          operation_type=OperationType.MANUAL)

    def request_stop(self, data_type: str) -> bool:
        return self.cleanup.request_stop(data_type)

    def get_cleanup_history(self, data_type: Optional[str] = None,
                            limit: int = 50) -> List[CleanupOperation]:
        return self.cleanup.history(data_type, limit)

    async def vacuum(self, analyze: bool = True) -> VacuumResult:
        return await self.vacuum_manager.vacuum(analyze)

    # Scheduling

    def schedule_due(self) -> List[str]:
        if not self.config_manager.is_enabled():
            logger.info("Data retention is disabled; nothing scheduled")
            return []
        return self.scheduler.schedule_due()

    def request_emergency_cleanup(self, data_type: str) -> CleanupJob:
        return self.scheduler.request_emergency(data_type)

    def get_active_jobs(self) -> List[str]:
        return self.scheduler.active_jobs()

    def get_jobs(self) -> List[CleanupJob]:
        return self.scheduler.jobs()

    def get_scheduler_status(self) -> SchedulerStatus:
        return self.scheduler.get_status()

    async def run_pending_jobs(self):
        """Drain the job queue in the foreground (CLI and tests)."""
        await self.scheduler.drain()

    # Introspection

    def query_table(self, query: TableQuery) -> QueryResult:
        return run_query(self.store, query)

    def get_retention_status(self) -> Dict[str, Any]:
        """Summary used by the CLI status command and the metrics exporter."""
        policies = self.policies.list()
        usage = self.collector.measure()
        latest = self.audit.cleanup_history(limit=1)
        return {
            'enabled': self.config_manager.is_enabled(),
            'policies_count': len(policies),
            'active_policies': len([p for p in policies if p.is_enabled]),
            'footprint_bytes': usage.footprint,
            'database_size_bytes': usage.total_size,
            'wal_size_bytes': usage.wal_size,
            'shm_size_bytes': usage.shm_size,
            'table_count': usage.table_count,
            'active_jobs': self.get_active_jobs(),
            'last_cleanup': latest[0].to_dict() if latest else None,
        }

    # Lifecycle

    async def start(self):
        if not self.config_manager.is_enabled():
            logger.info("Data retention is disabled; scheduler not started")
            return
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()

    async def close(self):
        await self.stop()
        self.store.close()
        logger.info("Retention Manager closed", db_path=str(self.db_path))


def create_retention_manager(config_path: Optional[str] = None,
                             db_path: Optional[str] = None,
                             overrides: Optional[Dict[str, Any]] = None) -> RetentionManager:
    """Create a RetentionManager, resolving paths from arguments, the environment or defaults."""
    config_path, db_path = resolve_paths(config_path, db_path)
    return RetentionManager(db_path, config_path, overrides)
