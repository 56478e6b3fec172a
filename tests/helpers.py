"""
Test helpers for building retention test databases.
"""

from datetime import datetime, timedelta

from retentiond.storage.retention_models import format_timestamp

START_TIME = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    """Controllable replacement for ``datetime.now``."""

    def __init__(self, now: datetime = START_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def create_metrics_table(store, table_name="system_metrics"):
    with store.transaction() as conn:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {table_name} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                cpu_percent REAL,
                memory_percent REAL,
                hostname TEXT
            )
        """)
        conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table_name}_ts ON {table_name}(timestamp)")


def insert_metrics(store, now, count, age_days, table_name="system_metrics"):
    """Insert ``count`` rows stamped ``age_days`` before ``now`` (SQLite text format)."""
    rows = []
    for i in range(count):
        stamp = now - timedelta(days=age_days, seconds=i)
        rows.append((stamp.strftime('%Y-%m-%d %H:%M:%S'), 10.0 + i % 50, 40.0, f"node-{i % 5}"))
    with store.transaction() as conn:
        conn.executemany(
            f"INSERT INTO {table_name} (timestamp, cpu_percent, memory_percent, hostname) "
            "VALUES (?, ?, ?, ?)",
            rows,
        )


def insert_snapshot(store, timestamp, total_size, tables=None):
    """Write a synthetic usage snapshot with optional per-table sizes."""
    stamp = format_timestamp(timestamp)
    tables = tables or {}
    with store.transaction() as conn:
        cursor = conn.execute(
            "INSERT INTO disk_usage_history (timestamp, total_size, wal_size, shm_size, "
            "table_count, index_count) VALUES (?, ?, 0, 0, ?, 0)",
            (stamp, total_size, len(tables)),
        )
        snapshot_id = cursor.lastrowid
        for name, size in tables.items():
            conn.execute(
                "INSERT INTO table_usage_history (snapshot_id, timestamp, table_name, "
                "record_count, size_bytes, index_size_bytes) VALUES (?, ?, ?, ?, ?, 0)",
                (snapshot_id, stamp, name, size // 100, size),
            )
    return snapshot_id


def count_rows(store, table_name="system_metrics"):
    return store.scalar(f"SELECT COUNT(*) FROM {table_name}", default=0)
