"""
Logging and audit trail for the retention system.

``AuditLog`` persists every cleanup and maintenance run to the store (a
``pending`` row at start, finalized at the end) and emits a structured log
event for each outcome. ``configure_logging`` wires structlog on top of the
standard logging module for the CLI and daemon.
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from .retention_database import StoreConnection
from .retention_models import (
    CleanupOperation, OperationStatus, OperationType, format_timestamp, parse_timestamp
)

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", json_output: bool = False):
    """Route structlog events through stdlib logging to stdout."""
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    renderer = (structlog.processors.JSONRenderer() if json_output
                else structlog.dev.ConsoleRenderer(colors=False))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def format_duration(duration_ms: int) -> str:
    """Human-readable duration."""
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def _operation_from_row(row) -> CleanupOperation:
    return CleanupOperation(
        id=row['id'],
        operation_type=OperationType(row['operation_type']),
        data_type=row['data_type'],
        records_affected=row['records_affected'],
        bytes_freed=row['bytes_freed'],
        duration_ms=row['duration_ms'],
        status=OperationStatus(row['status']),
        started_at=parse_timestamp(row['started_at']),
        completed_at=parse_timestamp(row['completed_at']),
        error_message=row['error_message'],
    )


class AuditLog:
    """Append-only audit rows for cleanup and maintenance operations."""

    def __init__(self, store: StoreConnection):
        self.store = store

    # Cleanup operations

    def start_cleanup(self, operation_type: OperationType, data_type: str,
                      started_at: datetime) -> CleanupOperation:
        """Write the ``pending`` row for a cleanup that is about to run."""
        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO data_cleanup_logs (
                    operation_type, data_type, records_affected, bytes_freed,
                    duration_ms, status, started_at
                ) VALUES (?, ?, 0, 0, 0, ?, ?)
                """,
                (operation_type.value, data_type, OperationStatus.PENDING.value,
                 format_timestamp(started_at)),
            )
            operation_id = cursor.lastrowid
        return CleanupOperation(
            id=operation_id,
            operation_type=operation_type,
            data_type=data_type,
            records_affected=0,
            bytes_freed=0,
            duration_ms=0,
            status=OperationStatus.PENDING,
            started_at=started_at,
        )

    def finish_cleanup(self, operation: CleanupOperation):
        """Finalize a cleanup row; it is never touched again afterwards."""
        if operation.status == OperationStatus.PENDING:
            raise ValueError("Cannot finalize a cleanup operation that is still pending")
        self.store.execute(
            """
            UPDATE data_cleanup_logs
            SET records_affected = ?, bytes_freed = ?, duration_ms = ?, status = ?,
                error_message = ?, completed_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                operation.records_affected,
                operation.bytes_freed,
                operation.duration_ms,
                operation.status.value,
                operation.error_message,
                format_timestamp(operation.completed_at) if operation.completed_at else None,
                operation.id,
                OperationStatus.PENDING.value,
            ),
        )

        fields = dict(
            operation_id=operation.id,
            data_type=operation.data_type,
            operation_type=operation.operation_type.value,
            records_affected=operation.records_affected,
            bytes_freed=operation.bytes_freed,
            duration=format_duration(operation.duration_ms),
        )
        if operation.status == OperationStatus.SUCCESS:
            logger.info("Cleanup operation completed", **fields)
        elif operation.status == OperationStatus.FAILED:
            logger.error("Cleanup operation failed", error=operation.error_message, **fields)
        else:
            logger.warning("Cleanup operation partial", error=operation.error_message, **fields)

    def close_interrupted_cleanups(self, now: datetime, started_before: datetime) -> int:
        """Mark rows still ``pending`` that started before ``started_before`` as failed."""
        count = self.store.execute(
            """
            UPDATE data_cleanup_logs
            SET status = ?, error_message = ?, completed_at = ?
            WHERE status = ? AND julianday(started_at) < julianday(?)
            """,
            (
                OperationStatus.FAILED.value,
                "Interrupted before the outcome was recorded",
                format_timestamp(now),
                OperationStatus.PENDING.value,
                format_timestamp(started_before),
            ),
        )
        if count:
            logger.warning("Closed interrupted cleanup operations", count=count)
        return count

    def cleanup_history(self, data_type: Optional[str] = None, limit: int = 50) -> List[CleanupOperation]:
        """Most recent cleanup operations first."""
        if data_type is None:
            rows = self.store.fetchall(
                "SELECT * FROM data_cleanup_logs ORDER BY started_at DESC, id DESC LIMIT ?",
                (int(limit),),
            )
        else:
            rows = self.store.fetchall(
                "SELECT * FROM data_cleanup_logs WHERE data_type = ? "
                "ORDER BY started_at DESC, id DESC LIMIT ?",
                (data_type, int(limit)),
            )
        return [_operation_from_row(row) for row in rows]

    def get_cleanup(self, operation_id: int) -> Optional[CleanupOperation]:
        row = self.store.fetchone("SELECT * FROM data_cleanup_logs WHERE id = ?", (operation_id,))
        return _operation_from_row(row) if row is not None else None

    def cleanup_totals(self) -> Dict[str, Dict[str, int]]:
        """Records and bytes removed per data type across finalized operations."""
        rows = self.store.fetchall(
            """
            SELECT data_type, COUNT(*) AS operations, SUM(records_affected) AS records,
                   SUM(bytes_freed) AS bytes
            FROM data_cleanup_logs
            WHERE status != 'pending'
            GROUP BY data_type
            """
        )
        return {
            row['data_type']: {
                'operations': row['operations'],
                'records': row['records'] or 0,
                'bytes': row['bytes'] or 0,
            }
            for row in rows
        }

    # Maintenance operations

    def start_maintenance(self, operation: str, started_at: datetime) -> int:
        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO maintenance_logs (operation, status, started_at)
                VALUES (?, ?, ?)
                """,
                (operation, OperationStatus.PENDING.value, format_timestamp(started_at)),
            )
            return cursor.lastrowid

    def finish_maintenance(self, log_id: int, status: OperationStatus, size_before: int,
                           size_after: int, duration_ms: int, completed_at: datetime,
                           error_message: Optional[str] = None):
        self.store.execute(
            """
            UPDATE maintenance_logs
            SET size_before = ?, size_after = ?, duration_ms = ?, status = ?,
                error_message = ?, completed_at = ?
            WHERE id = ? AND status = ?
            """,
            (size_before, size_after, duration_ms, status.value, error_message,
             format_timestamp(completed_at), log_id, OperationStatus.PENDING.value),
        )
        if status == OperationStatus.SUCCESS:
            logger.info("Maintenance completed", log_id=log_id, size_after=size_after,
                        duration=format_duration(duration_ms))
        else:
            logger.error("Maintenance failed", log_id=log_id, error=error_message)

    def maintenance_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = self.store.fetchall(
            "SELECT * FROM maintenance_logs ORDER BY started_at DESC, id DESC LIMIT ?",
            (int(limit),),
        )
        return [dict(row) for row in rows]
