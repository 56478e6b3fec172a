"""
Unit tests for storage monitoring functionality.

Covers live usage measurement, snapshot history and store statistics.
"""

import sqlite3
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from helpers import create_metrics_table, insert_metrics, insert_snapshot
from retentiond.storage.retention_database import ENGINE_TABLES


@pytest.fixture
def populated_manager(manager):
    create_metrics_table(manager.store)
    insert_metrics(manager.store, manager.clock(), 1500, age_days=1)
    return manager


class TestUsageMeasurement:
    """Live measurement of the store."""

    @pytest.mark.asyncio
    async def test_usage_metrics(self, populated_manager):
        metrics = await populated_manager.get_usage_metrics()
        usage = metrics.usage

        assert usage.total_size > 0
        assert usage.footprint == usage.total_size + usage.wal_size + usage.shm_size
        assert usage.table_count == len(ENGINE_TABLES) + 1
        assert usage.index_count >= 1
        assert usage.timestamp == populated_manager.clock()
        assert usage.id is None
        assert metrics.table_usages == usage.per_table

    @pytest.mark.asyncio
    async def test_usage_metrics_include_capacity(self, populated_manager):
        metrics = await populated_manager.get_usage_metrics()

        assert metrics.total_space == 100 * 1024 * 1024
        assert metrics.free_space == metrics.total_space - metrics.usage.footprint
        assert 0 < metrics.used_percent < 100
        assert [p.timeframe for p in metrics.predictions] == ['30d', '60d', '90d', '180d', '1y']
        assert metrics.growth_rates == []
        assert metrics.last_cleanup is None

    @pytest.mark.asyncio
    async def test_usage_metrics_report_last_cleanup(self, populated_manager, clock):
        insert_metrics(populated_manager.store, clock(), 10, age_days=200)
        clock.advance(minutes=5)
        operation = await populated_manager.perform_cleanup('system_metrics', force=True)

        metrics = await populated_manager.get_usage_metrics()

        assert metrics.last_cleanup == operation.completed_at
        data = metrics.to_dict()
        assert data['last_cleanup'] == operation.completed_at.isoformat()
        assert len(data['usage']['per_table']) == metrics.usage.table_count

    @pytest.mark.asyncio
    async def test_filesystem_capacity_without_budget(self, make_manager):
        manager = make_manager(**{'global': {'total_space_bytes': None}})
        disk = SimpleNamespace(total=500 * 1024 ** 3, free=200 * 1024 ** 3)

        with patch('retentiond.storage.retention_trends.psutil.disk_usage', return_value=disk):
            metrics = await manager.get_usage_metrics()

        assert metrics.total_space == disk.total
        assert metrics.free_space == disk.free

    @pytest.mark.asyncio
    async def test_usage_metrics_are_not_recorded(self, populated_manager):
        await populated_manager.get_usage_metrics()
        assert populated_manager.collector.history() == []

    @pytest.mark.asyncio
    async def test_table_breakdown(self, populated_manager):
        breakdown = await populated_manager.get_table_breakdown()

        names = [usage.table_name for usage in breakdown]
        assert names == sorted(names)
        metrics = next(u for u in breakdown if u.table_name == 'system_metrics')
        assert metrics.record_count == 1500
        assert metrics.size_bytes > 0
        assert metrics.index_size_bytes is not None
        assert metrics.average_row_size > 0

    @pytest.mark.asyncio
    async def test_failing_table_reported_as_unknown(self, populated_manager):
        collector = populated_manager.collector
        real_count = collector._count_rows

        def count_rows(table_name):
            if table_name == 'system_metrics':
                raise sqlite3.DatabaseError("database disk image is malformed")
            return real_count(table_name)

        with patch.object(collector, '_count_rows', side_effect=count_rows):
            breakdown = await populated_manager.get_table_breakdown()

        metrics = next(u for u in breakdown if u.table_name == 'system_metrics')
        assert metrics.record_count is None
        assert metrics.size_bytes is None
        assert metrics.average_row_size is None
        policies = next(u for u in breakdown if u.table_name == 'retention_policies')
        assert policies.record_count == 8

    def test_table_size_tracks_deletes(self, populated_manager):
        collector = populated_manager.collector
        before = collector.table_size('system_metrics')

        populated_manager.store.execute("DELETE FROM system_metrics WHERE rowid % 2 = 0")

        assert 0 < collector.table_size('system_metrics') <= before

    def test_apportioned_size_recounts_only_the_target(self, populated_manager):
        collector = populated_manager.collector
        populated_manager.store._dbstat_available = False
        collector.table_breakdown()

        with patch.object(collector, '_count_rows', wraps=collector._count_rows) as counted:
            size = collector.table_size('system_metrics')
            collector.average_row_size('system_metrics')

        assert size > 0
        assert [c.args for c in counted.call_args_list] == [('system_metrics',), ('system_metrics',)]

    def test_apportioned_size_counts_unseen_tables_once(self, populated_manager):
        collector = populated_manager.collector
        populated_manager.store._dbstat_available = False
        tables = populated_manager.store.table_names()

        with patch.object(collector, '_count_rows', wraps=collector._count_rows) as counted:
            collector.table_size('system_metrics')
            collector.table_size('system_metrics')

        assert counted.call_count == len(tables) + 1

    def test_average_row_size_default_for_empty_table(self, manager):
        create_metrics_table(manager.store)
        assert manager.collector.average_row_size('system_metrics') == 100.0

    @pytest.mark.asyncio
    async def test_wal_files_count_towards_footprint(self, make_manager):
        manager = make_manager(storage_monitoring={'enable_wal': True})
        create_metrics_table(manager.store)
        insert_metrics(manager.store, manager.clock(), 100, age_days=1)

        usage = (await manager.get_usage_metrics()).usage
        stats = await manager.get_database_statistics()

        assert usage.wal_size > 0
        assert usage.footprint == usage.total_size + usage.wal_size + usage.shm_size
        assert stats.wal_mode is True


class TestSnapshotHistory:

    @pytest.mark.asyncio
    async def test_snapshot_is_recorded(self, populated_manager):
        snapshot = await populated_manager.record_snapshot()

        assert snapshot.id is not None
        history = populated_manager.collector.history()
        assert [s.id for s in history] == [snapshot.id]

        latest = populated_manager.collector.latest_snapshot()
        assert latest.id == snapshot.id
        assert latest.total_size == snapshot.total_size
        tables = {usage.table_name: usage for usage in latest.per_table}
        assert tables['system_metrics'].record_count == 1500

    @pytest.mark.asyncio
    async def test_snapshots_are_append_only(self, populated_manager, clock):
        first = await populated_manager.record_snapshot()
        clock.advance(hours=1)
        second = await populated_manager.record_snapshot()

        history = populated_manager.collector.history()
        assert [s.id for s in history] == [first.id, second.id]
        assert history[0].timestamp < history[1].timestamp
        assert 'system_metrics' in populated_manager.collector.tracked_tables()

    def test_history_window(self, manager):
        now = manager.clock()
        for days in (10, 5, 1):
            insert_snapshot(manager.store, now - timedelta(days=days), days * 1000)

        recent = manager.collector.history(since=now - timedelta(days=6))
        older = manager.collector.history(until=now - timedelta(days=4))

        assert [s.total_size for s in recent] == [5000, 1000]
        assert [s.total_size for s in older] == [10000, 5000]

    def test_latest_snapshot_empty(self, manager):
        assert manager.collector.latest_snapshot() is None

    def test_table_history_points(self, manager):
        now = manager.clock()
        insert_snapshot(manager.store, now - timedelta(days=1), 1000, {'alpha': 300})
        insert_snapshot(manager.store, now, 2000, {'alpha': 500, 'beta': 100})

        points = manager.collector.table_history('alpha')

        assert points == [(now - timedelta(days=1), 300), (now, 500)]
        assert manager.collector.tracked_tables() == ['alpha', 'beta']


class TestDatabaseStatistics:

    @pytest.mark.asyncio
    async def test_statistics(self, populated_manager):
        stats = await populated_manager.get_database_statistics()

        assert stats.total_tables == len(ENGINE_TABLES) + 1
        assert stats.total_records >= 1500 + 8
        assert stats.total_indexes >= 1
        assert stats.total_size > 0
        assert stats.fragmentation_level == 0
        assert stats.page_size > 0
        assert stats.wal_mode is False
        assert stats.last_vacuum is None

    @pytest.mark.asyncio
    async def test_fragmentation_after_delete(self, populated_manager):
        populated_manager.store.execute("DELETE FROM system_metrics")

        stats = await populated_manager.get_database_statistics()

        assert 0 < stats.fragmentation_level <= 100

    @pytest.mark.asyncio
    async def test_statistics_serialize(self, populated_manager):
        data = (await populated_manager.get_database_statistics()).to_dict()
        assert data['last_vacuum'] is None
        assert isinstance(data['fragmentation_level'], float)
