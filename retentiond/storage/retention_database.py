"""
SQLite access layer for the retention system.

All statements issued by the engine go through a single ``StoreConnection``:
one autocommit ``sqlite3`` connection guarded by a re-entrant lock, with
explicit ``BEGIN IMMEDIATE`` transactions for writes.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import structlog

logger = structlog.get_logger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS disk_usage_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        total_size INTEGER NOT NULL,
        wal_size INTEGER NOT NULL DEFAULT 0,
        shm_size INTEGER NOT NULL DEFAULT 0,
        table_count INTEGER NOT NULL DEFAULT 0,
        index_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_disk_usage_history_timestamp ON disk_usage_history(timestamp)",
    """
    CREATE TABLE IF NOT EXISTS table_usage_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        snapshot_id INTEGER NOT NULL REFERENCES disk_usage_history(id) ON DELETE CASCADE,
        timestamp TEXT NOT NULL,
        table_name TEXT NOT NULL,
        record_count INTEGER,
        size_bytes INTEGER,
        index_size_bytes INTEGER
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_table_usage_history_table_time
        ON table_usage_history(table_name, timestamp)
    """,
    """
    CREATE TABLE IF NOT EXISTS data_cleanup_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        operation_type TEXT NOT NULL,
        data_type TEXT NOT NULL,
        records_affected INTEGER NOT NULL DEFAULT 0,
        bytes_freed INTEGER NOT NULL DEFAULT 0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        error_message TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_data_cleanup_logs_type_completed
        ON data_cleanup_logs(data_type, completed_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS retention_policies (
        data_type TEXT PRIMARY KEY,
        max_age_days INTEGER NOT NULL CHECK (max_age_days > 0),
        max_records INTEGER CHECK (max_records IS NULL OR max_records > 0),
        compression_enabled INTEGER NOT NULL DEFAULT 0,
        archival_enabled INTEGER NOT NULL DEFAULT 0,
        cleanup_frequency TEXT NOT NULL DEFAULT 'daily'
            CHECK (cleanup_frequency IN ('daily', 'weekly', 'monthly')),
        is_enabled INTEGER NOT NULL DEFAULT 1,
        description TEXT NOT NULL DEFAULT '',
        category TEXT NOT NULL DEFAULT 'general',
        last_run TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS maintenance_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        operation TEXT NOT NULL,
        size_before INTEGER NOT NULL DEFAULT 0,
        size_after INTEGER NOT NULL DEFAULT 0,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        error_message TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
)

# Tables created by the engine itself
ENGINE_TABLES = (
    'disk_usage_history',
    'table_usage_history',
    'data_cleanup_logs',
    'retention_policies',
    'maintenance_logs',
)


def quote_identifier(name: str) -> str:
    """Quote a table or column name for interpolation into SQL."""
    return '"' + name.replace('"', '""') + '"'


class StoreConnection:
    """Single logical connection to the SQLite store."""

    def __init__(self, db_path: str, enable_wal: bool = False, busy_timeout_ms: int = 5000):
        self.db_path = Path(db_path)
        if str(db_path) != ':memory:':
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None,
                                     check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        self._conn.execute("PRAGMA foreign_keys = ON")
        if enable_wal:
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._dbstat_available: Optional[bool] = None

    # Statement helpers

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a statement and return the number of changed rows."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            try:
                return cursor.rowcount
            finally:
                cursor.close()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            try:
                return cursor.fetchall()
            finally:
                cursor.close()

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            try:
                return cursor.fetchone()
            finally:
                cursor.close()

    def scalar(self, sql: str, params: Sequence[Any] = (), default: Any = None) -> Any:
        row = self.fetchone(sql, params)
        if row is None or row[0] is None:
            return default
        return row[0]

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; nested use joins the outer transaction."""
        with self._lock:
            if self._conn.in_transaction:
                yield self._conn
                return
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def executescript_outside_transaction(self, sql: str):
        """Run statements such as VACUUM that cannot run inside a transaction."""
        with self._lock:
            if self._conn.in_transaction:
                raise sqlite3.OperationalError("cannot run maintenance inside a transaction")
            self._conn.execute(sql)

    def close(self):
        with self._lock:
            self._conn.close()

    # Introspection

    def table_names(self, include_engine_tables: bool = True) -> List[str]:
        rows = self.fetchall(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        names = [row['name'] for row in rows]
        if not include_engine_tables:
            names = [name for name in names if name not in ENGINE_TABLES]
        return names

    def table_exists(self, table_name: str) -> bool:
        row = self.fetchone(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (table_name,),
        )
        return row is not None

    def table_columns(self, table_name: str) -> List[str]:
        rows = self.fetchall(f"PRAGMA table_info({quote_identifier(table_name)})")
        return [row['name'] for row in rows]

    def index_names(self, table_name: Optional[str] = None) -> List[str]:
        if table_name is None:
            rows = self.fetchall(
                "SELECT name FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_%'"
            )
        else:
            rows = self.fetchall(
                "SELECT name FROM sqlite_master WHERE type = 'index' "
                "AND tbl_name = ? AND name NOT LIKE 'sqlite_%'",
                (table_name,),
            )
        return [row['name'] for row in rows]

    def pragma(self, name: str) -> Any:
        return self.scalar(f"PRAGMA {name}")

    @property
    def dbstat_available(self) -> bool:
        """Whether SQLite was compiled with the dbstat virtual table."""
        if self._dbstat_available is None:
            try:
                self.fetchone("SELECT 1 FROM dbstat LIMIT 1")
                self._dbstat_available = True
            except sqlite3.OperationalError:
                logger.info("dbstat virtual table unavailable, using size heuristics")
                self._dbstat_available = False
        return self._dbstat_available

    def file_sizes(self) -> Tuple[int, int, int]:
        """Sizes of the main file, the WAL file and the shared-memory file."""
        return (
            _file_size(self.db_path),
            _file_size(Path(f"{self.db_path}-wal")),
            _file_size(Path(f"{self.db_path}-shm")),
        )


def _file_size(path: Path) -> int:
    try:
        return os.stat(path).st_size
    except OSError:
        # Side files only exist while the store is in WAL mode
        return 0


def initialize_schema(store: StoreConnection):
    """Create the tables owned by the retention engine."""
    with store.transaction() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
    logger.debug("Retention schema ready", db_path=str(store.db_path))
