"""
Space reclamation for the retention system.

VACUUM rewrites the whole file, so it runs under the global maintenance lock
and never overlaps a cleanup.
"""

import asyncio
import sqlite3
import time
from datetime import datetime
from typing import Callable

import structlog

from .retention_database import StoreConnection
from .retention_errors import ExecutionError
from .retention_jobs import JobRegistry
from .retention_logging import AuditLog
from .retention_models import OperationStatus, VacuumResult
from .retention_monitoring import UsageMetricsCollector

logger = structlog.get_logger(__name__)


class VacuumManager:
    """Runs VACUUM / ANALYZE and records each run in the maintenance audit table."""

    def __init__(self, store: StoreConnection, collector: UsageMetricsCollector,
                 registry: JobRegistry, audit: AuditLog,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.collector = collector
        self.registry = registry
        self.audit = audit
        self.clock = clock

    def _wal_mode(self) -> bool:
        return str(self.store.pragma("journal_mode")).lower() == 'wal'

    def _checkpoint(self):
        if self._wal_mode():
            self.store.fetchone("PRAGMA wal_checkpoint(TRUNCATE)")

    async def vacuum(self, analyze: bool = True) -> VacuumResult:
        """Reclaim free pages; raises ConflictError while any cleanup is active."""
        operation = 'vacuum_analyze' if analyze else 'vacuum'
        with self.registry.maintenance_slot(operation):
            return await self._run(operation, analyze)

    async def analyze(self) -> VacuumResult:
        """Refresh planner statistics without rewriting the file."""
        with self.registry.maintenance_slot('analyze'):
            return await self._run('analyze', analyze=True, vacuum=False)

    async def _run(self, operation: str, analyze: bool, vacuum: bool = True) -> VacuumResult:
        started_at = self.clock()
        start = time.monotonic()
        log_id = self.audit.start_maintenance(operation, started_at)
        size_before = self.collector.footprint()
        logger.info("Maintenance started", operation=operation, size_before=size_before)

        try:
            if vacuum:
                if analyze:
                    # Statistics pages must exist before the file is measured and rebuilt
                    self.store.executescript_outside_transaction("ANALYZE")
                    size_before = self.collector.footprint()
                self._checkpoint()
                self.store.executescript_outside_transaction("VACUUM")
                await asyncio.sleep(0)
            else:
                self.store.executescript_outside_transaction("ANALYZE")
            self._checkpoint()
        except sqlite3.Error as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            self.audit.finish_maintenance(log_id, OperationStatus.FAILED, size_before,
                                          self.collector.footprint(), duration_ms, self.clock(),
                                          error_message=str(e))
            raise ExecutionError(f"{operation} failed: {e}") from e

        size_after = self.collector.footprint()
        duration_ms = int((time.monotonic() - start) * 1000)
        self.audit.finish_maintenance(log_id, OperationStatus.SUCCESS, size_before, size_after,
                                      duration_ms, self.clock())

        result = VacuumResult(
            size_before=size_before,
            size_after=size_after,
            duration_ms=duration_ms,
            analyzed=analyze,
        )
        logger.info("Maintenance finished", operation=operation,
                    bytes_reclaimed=result.bytes_reclaimed, duration_ms=duration_ms)
        return result
