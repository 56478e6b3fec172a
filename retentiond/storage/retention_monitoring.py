"""
Storage monitoring for the retention system.

This module takes usage snapshots of the store (per-table rows and bytes, main
file, WAL and shared-memory sizes), keeps the append-only snapshot history and
reports store-level health statistics.
"""

import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .retention_database import StoreConnection, quote_identifier
from .retention_models import (
    DatabaseStatistics, TableUsage, UsageSnapshot, format_timestamp, parse_timestamp
)

logger = structlog.get_logger(__name__)


class UsageMetricsCollector:
    """Measures store usage and records snapshots for trend analysis."""

    def __init__(self, store: StoreConnection, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock
        # Last counted rows per table, reused when apportioning a single table's size
        self._row_counts: Dict[str, int] = {}

    # File level

    def file_sizes(self) -> Tuple[int, int, int]:
        return self.store.file_sizes()

    def footprint(self) -> int:
        """Bytes on disk for the main file plus its side files."""
        return sum(self.file_sizes())

    # Table level

    def _count_rows(self, table_name: str) -> int:
        count = self.store.scalar(f"SELECT COUNT(*) FROM {quote_identifier(table_name)}", default=0)
        self._row_counts[table_name] = count
        return count

    def _known_counts(self, table_name: str, count: int) -> Dict[str, int]:
        """Fresh ``count`` for one table, last known counts for the rest."""
        counts = {}
        for name in self.store.table_names():
            if name == table_name:
                counts[name] = count
            elif name in self._row_counts:
                counts[name] = self._row_counts[name]
            else:
                counts[name] = self._count_rows(name)
        return counts

    def _dbstat_sizes(self, table_name: str) -> Tuple[int, int]:
        size = self.store.scalar(
            "SELECT SUM(pgsize) FROM dbstat WHERE name = ?", (table_name,), default=0
        )
        index_size = self.store.scalar(
            "SELECT SUM(pgsize) FROM dbstat WHERE name IN "
            "(SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?)",
            (table_name,), default=0,
        )
        return int(size), int(index_size)

    def _heuristic_weights(self, counts: Dict[str, int]) -> Dict[str, Tuple[int, int]]:
        """Row-count x column-count weights per table and per table's indexes."""
        weights = {}
        for table_name, count in counts.items():
            column_count = max(len(self.store.table_columns(table_name)), 1)
            index_columns = 0
            for index_name in self.store.index_names(table_name):
                rows = self.store.fetchall(f"PRAGMA index_info({quote_identifier(index_name)})")
                index_columns += len(rows)
            weights[table_name] = (count * column_count, count * index_columns)
        return weights

    def _apportion(self, counts: Dict[str, int]) -> Dict[str, Tuple[int, int]]:
        """Split the used pages of the file between tables when dbstat is missing."""
        page_size = self.store.pragma("page_size") or 0
        page_count = self.store.pragma("page_count") or 0
        freelist = self.store.pragma("freelist_count") or 0
        used_bytes = max(page_count - freelist, 0) * page_size

        weights = self._heuristic_weights(counts)
        total_weight = sum(table + index for table, index in weights.values())
        if total_weight == 0:
            return {name: (0, 0) for name in counts}
        return {
            name: (int(used_bytes * table / total_weight), int(used_bytes * index / total_weight))
            for name, (table, index) in weights.items()
        }

    def table_breakdown(self) -> List[TableUsage]:
        """Per-table usage; tables whose introspection fails are reported as unknown."""
        usages: Dict[str, TableUsage] = {}
        counts: Dict[str, int] = {}

        for table_name in self.store.table_names():
            try:
                counts[table_name] = self._count_rows(table_name)
            except sqlite3.Error as e:
                logger.warning("Table introspection failed", table=table_name, error=str(e))
                usages[table_name] = TableUsage(table_name, None, None, None)

        if self.store.dbstat_available:
            for table_name, count in counts.items():
                try:
                    size, index_size = self._dbstat_sizes(table_name)
                    usages[table_name] = TableUsage(table_name, count, size, index_size)
                except sqlite3.Error as e:
                    logger.warning("Table size query failed", table=table_name, error=str(e))
                    usages[table_name] = TableUsage(table_name, count, None, None)
        else:
            try:
                sizes = self._apportion(counts)
            except sqlite3.Error as e:
                logger.warning("Size apportioning failed", error=str(e))
                sizes = {}
            for table_name, count in counts.items():
                size, index_size = sizes.get(table_name, (None, None))
                usages[table_name] = TableUsage(table_name, count, size, index_size)

        return [usages[name] for name in sorted(usages)]

    def table_size(self, table_name: str, count: Optional[int] = None) -> int:
        """Fresh byte footprint of one table including its indexes.

        Without dbstat only ``table_name`` is recounted; other tables are
        weighted by their last known row counts.
        """
        if self.store.dbstat_available:
            size, index_size = self._dbstat_sizes(table_name)
            return size + index_size
        if count is None:
            count = self._count_rows(table_name)
        counts = self._known_counts(table_name, count)
        size, index_size = self._apportion(counts).get(table_name, (0, 0))
        return size + index_size

    def average_row_size(self, table_name: str, default: float = 100.0) -> float:
        """Average bytes per row, falling back to a fixed estimate for empty tables."""
        try:
            count = self._count_rows(table_name)
            if count == 0:
                return default
            return max(self.table_size(table_name, count) / count, 1.0)
        except sqlite3.Error as e:
            logger.warning("Could not get average row size", table=table_name, error=str(e))
            return default

    # Snapshots

    def measure(self) -> UsageSnapshot:
        """Current usage without recording it."""
        total_size, wal_size, shm_size = self.file_sizes()
        per_table = self.table_breakdown()
        return UsageSnapshot(
            timestamp=self.clock(),
            total_size=total_size,
            wal_size=wal_size,
            shm_size=shm_size,
            table_count=len(per_table),
            index_count=len(self.store.index_names()),
            per_table=per_table,
        )

    async def snapshot(self) -> UsageSnapshot:
        """Measure the store and append the result to the snapshot history."""
        measured = self.measure()
        per_table = measured.per_table
        stamp = format_timestamp(measured.timestamp)

        with self.store.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO disk_usage_history (
                    timestamp, total_size, wal_size, shm_size, table_count, index_count
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (stamp, measured.total_size, measured.wal_size, measured.shm_size,
                 measured.table_count, measured.index_count),
            )
            snapshot_id = cursor.lastrowid
            conn.executemany(
                """
                INSERT INTO table_usage_history (
                    snapshot_id, timestamp, table_name, record_count, size_bytes, index_size_bytes
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (snapshot_id, stamp, usage.table_name, usage.record_count,
                     usage.size_bytes, usage.index_size_bytes)
                    for usage in per_table
                ],
            )

        snapshot = replace(measured, id=snapshot_id)
        logger.debug("Storage snapshot recorded",
                     snapshot_id=snapshot_id,
                     footprint_mb=round(snapshot.footprint / 1024 / 1024, 2),
                     tables=len(per_table))
        return snapshot

    def history(self, since: Optional[datetime] = None, until: Optional[datetime] = None,
                include_tables: bool = False) -> List[UsageSnapshot]:
        """Snapshots ordered by timestamp."""
        clauses, params = [], []
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(format_timestamp(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(format_timestamp(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.store.fetchall(
            f"SELECT * FROM disk_usage_history {where} ORDER BY timestamp, id", params
        )

        tables_by_snapshot: Dict[int, List[TableUsage]] = {}
        if include_tables and rows:
            placeholders = ",".join("?" for _ in rows)
            for row in self.store.fetchall(
                f"SELECT * FROM table_usage_history WHERE snapshot_id IN ({placeholders}) "
                "ORDER BY table_name",
                [row['id'] for row in rows],
            ):
                tables_by_snapshot.setdefault(row['snapshot_id'], []).append(TableUsage(
                    row['table_name'], row['record_count'], row['size_bytes'], row['index_size_bytes']
                ))

        return [
            UsageSnapshot(
                id=row['id'],
                timestamp=parse_timestamp(row['timestamp']),
                total_size=row['total_size'],
                wal_size=row['wal_size'],
                shm_size=row['shm_size'],
                table_count=row['table_count'],
                index_count=row['index_count'],
                per_table=tables_by_snapshot.get(row['id'], []),
            )
            for row in rows
        ]

    def latest_snapshot(self) -> Optional[UsageSnapshot]:
        row = self.store.fetchone("SELECT MAX(timestamp) FROM disk_usage_history")
        if row is None or row[0] is None:
            return None
        latest = parse_timestamp(row[0])
        snapshots = self.history(since=latest, include_tables=True)
        return snapshots[-1] if snapshots else None

    def table_history(self, table_name: str,
                      since: Optional[datetime] = None) -> List[Tuple[datetime, int]]:
        """(timestamp, bytes) points for one table; unknown sizes are skipped."""
        params = [table_name]
        where = "table_name = ? AND size_bytes IS NOT NULL"
        if since is not None:
            where += " AND timestamp >= ?"
            params.append(format_timestamp(since))
        rows = self.store.fetchall(
            f"SELECT timestamp, size_bytes, index_size_bytes FROM table_usage_history "
            f"WHERE {where} ORDER BY timestamp, id",
            params,
        )
        return [
            (parse_timestamp(row['timestamp']), row['size_bytes'] + (row['index_size_bytes'] or 0))
            for row in rows
        ]

    def tracked_tables(self) -> List[str]:
        rows = self.store.fetchall("SELECT DISTINCT table_name FROM table_usage_history ORDER BY table_name")
        return [row['table_name'] for row in rows]

    # Health

    async def database_statistics(self) -> DatabaseStatistics:
        """Store-level statistics: counts, fragmentation, pragmas, last maintenance."""
        tables = self.store.table_names()
        total_records = 0
        for table_name in tables:
            try:
                total_records += self._count_rows(table_name)
            except sqlite3.Error as e:
                logger.warning("Row count failed", table=table_name, error=str(e))

        page_count = self.store.pragma("page_count") or 0
        freelist = self.store.pragma("freelist_count") or 0
        fragmentation = (freelist / page_count) * 100 if page_count > 0 else 0.0

        return DatabaseStatistics(
            total_tables=len(tables),
            total_records=total_records,
            total_indexes=len(self.store.index_names()),
            total_size=self.footprint(),
            fragmentation_level=round(fragmentation, 2),
            last_vacuum=self._last_maintenance(('vacuum', 'vacuum_analyze')),
            last_analyze=self._last_maintenance(('analyze', 'vacuum_analyze')),
            wal_mode=str(self.store.pragma("journal_mode")).lower() == 'wal',
            page_size=self.store.pragma("page_size") or 0,
            cache_size=self.store.pragma("cache_size") or 0,
        )

    def _last_maintenance(self, operations: Tuple[str, ...]) -> Optional[datetime]:
        placeholders = ",".join("?" for _ in operations)
        value = self.store.scalar(
            f"SELECT MAX(completed_at) FROM maintenance_logs "
            f"WHERE status = 'success' AND operation IN ({placeholders})",
            operations,
        )
        return parse_timestamp(value)
