"""
Core cleanup logic for the retention system.

``CleanupEngine`` estimates and executes policy-driven deletion. Both use the
same predicate (older than ``max_age_days`` OR outside the ``max_records``
newest rows), so an estimate taken while nothing else writes matches what an
execution removes. Execution deletes oldest-first in bounded batches, one
transaction per batch, and re-evaluates the predicate for every batch.
"""

import asyncio
import gzip
import json
import sqlite3
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import IO, Any, Callable, List, Optional, Tuple

import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .retention_config import TIMESTAMP_COLUMN_CANDIDATES, CleanupSettings, RetentionConfigManager
from .retention_database import StoreConnection, quote_identifier
from .retention_errors import (
    EstimationError, ExecutionError, NotFoundError, RetentionError, ValidationError
)
from .retention_jobs import JobRegistry
from .retention_logging import AuditLog
from .retention_models import (
    CleanupEstimate, CleanupOperation, DataTypeTarget, ImpactAnalysis, ImpactLevel,
    OperationStatus, OperationType, RetentionPolicy, parse_timestamp
)
from .retention_monitoring import UsageMetricsCollector
from .retention_policies import RetentionPolicyStore

logger = structlog.get_logger(__name__)

HIGH_IMPACT_RECORDS = 100000
MEDIUM_IMPACT_RECORDS = 10000

# Categories whose loss is harder to recover from
SENSITIVE_CATEGORIES = ('security', 'audit')

RECOMMENDED_TIMES = {
    ImpactLevel.HIGH: "off-peak hours (02:00-05:00)",
    ImpactLevel.MEDIUM: "low-traffic window",
    ImpactLevel.LOW: "any time",
}


def analyze_impact(records: int, category: str) -> ImpactAnalysis:
    """Classify the performance impact and integrity risk of removing ``records`` rows."""
    if records > HIGH_IMPACT_RECORDS:
        performance = ImpactLevel.HIGH
    elif records > MEDIUM_IMPACT_RECORDS:
        performance = ImpactLevel.MEDIUM
    else:
        performance = ImpactLevel.LOW

    if category in SENSITIVE_CATEGORIES:
        risk = ImpactLevel.HIGH if records > MEDIUM_IMPACT_RECORDS else ImpactLevel.MEDIUM
    else:
        risk = ImpactLevel.MEDIUM if records > HIGH_IMPACT_RECORDS else ImpactLevel.LOW

    return ImpactAnalysis(
        performance_impact=performance,
        data_integrity_risk=risk,
        recommended_time=RECOMMENDED_TIMES[performance],
    )


def is_busy_error(exc: BaseException) -> bool:
    """SQLite lock contention that is worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return 'database is locked' in message or 'database is busy' in message


class ArchiveWriter:
    """Appends deleted rows as JSON lines, gzip-compressed when requested."""

    def __init__(self, path: Path, compress: bool):
        self.path = path
        self.compress = compress
        self.rows_written = 0
        self._handle: Optional[IO[str]] = None

    def _open(self) -> IO[str]:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.compress:
                self._handle = gzip.open(self.path, 'at', encoding='utf-8')
            else:
                self._handle = open(self.path, 'a', encoding='utf-8')
        return self._handle

    def write(self, rows: List[sqlite3.Row]):
        handle = self._open()
        for row in rows:
            handle.write(json.dumps(dict(row), default=str) + '\n')
        handle.flush()
        self.rows_written += len(rows)

    def close(self):
        if self._handle is not None:
            self._handle.close()
            self._handle = None


class CleanupEngine:
    """Estimates and executes retention cleanups."""

    def __init__(self, store: StoreConnection, policies: RetentionPolicyStore,
                 collector: UsageMetricsCollector, registry: JobRegistry, audit: AuditLog,
                 config_manager: Optional[RetentionConfigManager] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.policies = policies
        self.collector = collector
        self.registry = registry
        self.audit = audit
        self.config_manager = config_manager or RetentionConfigManager()
        self.clock = clock

        settings = self.settings
        self._delete_batch_with_retry = retry(
            stop=stop_after_attempt(settings.busy_retries),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            retry=retry_if_exception(is_busy_error),
            reraise=True,
        )(self._delete_batch)

    @property
    def settings(self) -> CleanupSettings:
        return self.config_manager.config.cleanup

    # Targets and predicates

    def resolve_target(self, data_type: str) -> DataTypeTarget:
        """Find the table and timestamp column governed by ``data_type``."""
        settings = self.config_manager.get_data_type_settings(data_type)
        table_name = settings.table if settings else data_type
        if not self.store.table_exists(table_name):
            raise NotFoundError(f"Table {table_name} for data type {data_type} does not exist",
                                data_type=data_type)

        columns = self.store.table_columns(table_name)
        if settings and settings.timestamp_column:
            column = settings.timestamp_column
        else:
            column = next((c for c in TIMESTAMP_COLUMN_CANDIDATES if c in columns), None)
        if column is None or column not in columns:
            raise NotFoundError(f"No timestamp column found on {table_name}", data_type=data_type)

        return DataTypeTarget(
            data_type=data_type,
            table_name=table_name,
            timestamp_column=column,
            timestamp_format=settings.timestamp_format if settings else 'iso',
        )

    def _age_clause(self, policy: RetentionPolicy, target: DataTypeTarget) -> Tuple[str, Any]:
        cutoff = self.clock() - timedelta(days=policy.max_age_days)
        column = quote_identifier(target.timestamp_column)
        if target.timestamp_format == 'epoch':
            return f"{column} < ?", cutoff.timestamp()
        # julianday() reads both 'T' and space separated ISO text; unparseable values never match
        return f"julianday({column}) < julianday(?)", cutoff.isoformat(sep=' ')

    def _predicate(self, policy: RetentionPolicy, target: DataTypeTarget) -> Tuple[str, List[Any]]:
        """WHERE clause selecting every row the policy would delete."""
        table = quote_identifier(target.table_name)
        column = quote_identifier(target.timestamp_column)
        age_clause, cutoff = self._age_clause(policy, target)
        clauses = [age_clause]
        params: List[Any] = [cutoff]
        if policy.max_records:
            clauses.append(
                f"rowid NOT IN (SELECT rowid FROM {table} ORDER BY {column} DESC, rowid DESC LIMIT ?)"
            )
            params.append(policy.max_records)
        return " OR ".join(f"({clause})" for clause in clauses), params

    def _batch_selector(self, policy: RetentionPolicy, target: DataTypeTarget) -> Tuple[str, List[Any]]:
        table = quote_identifier(target.table_name)
        column = quote_identifier(target.timestamp_column)
        predicate, params = self._predicate(policy, target)
        sql = (f"SELECT rowid FROM {table} WHERE {predicate} "
               f"ORDER BY {column} ASC, rowid ASC LIMIT ?")
        return sql, params + [self.settings.batch_size]

    # Estimation

    async def estimate(self, data_type: str) -> CleanupEstimate:
        """Dry run: what ``execute`` would remove right now. Never mutates."""
        policy = self.policies.get(data_type)
        try:
            target = self.resolve_target(data_type)
        except sqlite3.Error as e:
            logger.error("Cleanup target lookup failed", data_type=data_type, error=str(e))
            raise EstimationError(f"Failed to inspect the table for {data_type}: {e}",
                                  data_type=data_type) from e
        predicate, params = self._predicate(policy, target)
        table = quote_identifier(target.table_name)
        column = quote_identifier(target.timestamp_column)

        try:
            row = self.store.fetchone(
                f"SELECT COUNT(*), MIN({column}), MAX({column}) FROM {table} WHERE {predicate}",
                params,
            )
            records = row[0] if row else 0
            row_size = self.collector.average_row_size(target.table_name) if records else 0
        except sqlite3.Error as e:
            logger.error("Cleanup estimate failed", data_type=data_type, error=str(e))
            raise EstimationError(f"Failed to estimate cleanup for {data_type}: {e}",
                                  data_type=data_type) from e

        estimate = CleanupEstimate(
            data_type=data_type,
            estimated_records=records,
            estimated_bytes=int(records * row_size),
            oldest_record=parse_timestamp(row[1]) if records else None,
            newest_record=parse_timestamp(row[2]) if records else None,
            impact_analysis=analyze_impact(records, policy.category),
        )
        logger.info("Cleanup estimated", data_type=data_type, records=records,
                    bytes=estimate.estimated_bytes,
                    impact=estimate.impact_analysis.performance_impact.value)
        return estimate

    # Execution

    def _archive_writer(self, policy: RetentionPolicy, operation: CleanupOperation) -> ArchiveWriter:
        stamp = operation.started_at.strftime('%Y%m%d_%H%M%S')
        suffix = '.jsonl.gz' if policy.compression_enabled else '.jsonl'
        path = (Path(self.settings.archive_dir) / policy.data_type
                / f"{policy.data_type}_{stamp}_{operation.id}{suffix}")
        return ArchiveWriter(path, policy.compression_enabled)

    def _delete_batch(self, policy: RetentionPolicy, target: DataTypeTarget,
                      archive: Optional[ArchiveWriter]) -> int:
        """Delete one batch in its own transaction; returns the rows removed."""
        selector, params = self._batch_selector(policy, target)
        table = quote_identifier(target.table_name)
        with self.store.transaction() as conn:
            if archive is not None:
                rows = conn.execute(
                    f"SELECT * FROM {table} WHERE rowid IN ({selector}) "
                    f"ORDER BY {quote_identifier(target.timestamp_column)}, rowid",
                    params,
                ).fetchall()
                if not rows:
                    return 0
                archive.write(rows)
            cursor = conn.execute(f"DELETE FROM {table} WHERE rowid IN ({selector})", params)
            return cursor.rowcount

    def _measure(self, table_name: str) -> Optional[int]:
        try:
            return self.collector.table_size(table_name)
        except sqlite3.Error as e:
            logger.warning("Table size measurement failed", table=table_name, error=str(e))
            return None

    async def execute(self, data_type: str, force: bool = False,
                      operation_type: OperationType = OperationType.MANUAL) -> CleanupOperation:
        """Apply the policy for ``data_type``; see the module docstring for semantics."""
        policy = self.policies.get(data_type)
        if not policy.is_enabled and not force:
            raise ValidationError(
                f"Retention policy for {data_type} is disabled; pass force to run it anyway",
                data_type=data_type,
            )
        try:
            target = self.resolve_target(data_type)
        except sqlite3.Error as e:
            raise ExecutionError(f"Failed to inspect the table for {data_type}: {e}",
                                 data_type=data_type) from e

        with self.registry.cleanup_slot(data_type):
            # Concurrent callers see the claimed slot before the first batch runs
            await asyncio.sleep(0)
            return await self._run(policy, target, operation_type)

    async def _run(self, policy: RetentionPolicy, target: DataTypeTarget,
                   operation_type: OperationType) -> CleanupOperation:
        data_type = policy.data_type
        started_at = self.clock()
        start = time.monotonic()
        size_before = self._measure(target.table_name)
        try:
            operation = self.audit.start_cleanup(operation_type, data_type, started_at)
        except sqlite3.Error as e:
            logger.error("Cleanup could not be recorded", data_type=data_type, error=str(e))
            raise ExecutionError(f"Cleanup of {data_type} could not start: {e}",
                                 data_type=data_type) from e
        archive = self._archive_writer(policy, operation) if policy.archival_enabled else None

        logger.info("Cleanup started", data_type=data_type, table=target.table_name,
                    operation_id=operation.id, operation_type=operation_type.value,
                    batch_size=self.settings.batch_size)

        deleted = 0
        committed_batches = 0
        status = OperationStatus.SUCCESS
        error_message = None
        failure: Optional[BaseException] = None
        try:
            while True:
                if self.registry.stop_requested(data_type):
                    status = OperationStatus.PARTIAL
                    error_message = "Stopped on request"
                    break
                if time.monotonic() - start > self.settings.max_duration_seconds:
                    status = OperationStatus.PARTIAL
                    error_message = (f"Stopped after the {self.settings.max_duration_seconds}s "
                                     "time limit; remaining rows are left for the next run")
                    break

                removed = self._delete_batch_with_retry(policy, target, archive)
                if removed:
                    deleted += removed
                    committed_batches += 1
                if removed < self.settings.batch_size:
                    break
                await asyncio.sleep(0)
        except (sqlite3.Error, OSError) as e:
            failure = e
            status = OperationStatus.PARTIAL if committed_batches else OperationStatus.FAILED
            error_message = str(e)
        finally:
            if archive is not None:
                archive.close()

        size_after = self._measure(target.table_name)
        if size_before is None or size_after is None:
            bytes_freed = 0
        else:
            bytes_freed = max(0, size_before - size_after)

        operation.records_affected = deleted
        operation.bytes_freed = bytes_freed
        operation.duration_ms = int((time.monotonic() - start) * 1000)
        operation.status = status
        operation.error_message = error_message
        operation.completed_at = self.clock()
        try:
            self.audit.finish_cleanup(operation)
        except sqlite3.Error as e:
            logger.error("Cleanup outcome could not be recorded", data_type=data_type,
                         operation_id=operation.id, records_affected=deleted, error=str(e))
            raise ExecutionError(
                f"Cleanup of {data_type} removed {deleted} rows but its audit record "
                f"could not be finalized: {e}",
                data_type=data_type, operation=operation,
            ) from e

        if failure is not None:
            raise ExecutionError(f"Cleanup of {data_type} failed: {failure}",
                                 data_type=data_type, operation=operation) from failure
        return operation

    def request_stop(self, data_type: str) -> bool:
        """Ask a running cleanup to stop after its current batch."""
        return self.registry.request_stop(data_type)

    def history(self, data_type: Optional[str] = None, limit: int = 50) -> List[CleanupOperation]:
        if limit <= 0:
            raise ValidationError("History limit must be positive")
        return self.audit.cleanup_history(data_type, limit)

    async def estimate_all(self) -> List[CleanupEstimate]:
        """Estimates for every enabled policy whose table exists."""
        estimates = []
        for policy in self.policies.list():
            if not policy.is_enabled:
                continue
            try:
                estimates.append(await self.estimate(policy.data_type))
            except NotFoundError as e:
                logger.debug("Skipping estimate", data_type=policy.data_type, reason=e.message)
            except RetentionError as e:
                logger.warning("Estimate failed", data_type=policy.data_type, error=e.message)
        return estimates
