"""
Unit tests for vacuum and analyze maintenance.
"""

import sqlite3
from unittest.mock import patch

import pytest

from helpers import create_metrics_table, insert_metrics
from retentiond.storage.retention_errors import ConflictError, ExecutionError


@pytest.fixture
def fragmented_manager(manager):
    create_metrics_table(manager.store)
    insert_metrics(manager.store, manager.clock(), 5000, age_days=40)
    manager.store.execute("DELETE FROM system_metrics")
    return manager


class TestVacuum:

    @pytest.mark.asyncio
    async def test_vacuum_reclaims_space(self, fragmented_manager):
        stats_before = await fragmented_manager.get_database_statistics()
        assert stats_before.fragmentation_level > 0

        result = await fragmented_manager.vacuum()

        assert result.analyzed is True
        assert result.size_after < result.size_before
        assert result.bytes_reclaimed == result.size_before - result.size_after
        stats_after = await fragmented_manager.get_database_statistics()
        assert stats_after.fragmentation_level == 0
        assert stats_after.last_vacuum == fragmented_manager.clock()
        assert stats_after.last_analyze == fragmented_manager.clock()

    @pytest.mark.asyncio
    async def test_vacuum_without_analyze(self, fragmented_manager):
        result = await fragmented_manager.vacuum(analyze=False)

        assert result.analyzed is False
        assert result.size_after <= result.size_before
        stats = await fragmented_manager.get_database_statistics()
        assert stats.last_vacuum is not None
        assert stats.last_analyze is None

    @pytest.mark.asyncio
    async def test_analyze_only(self, manager):
        result = await manager.vacuum_manager.analyze()

        assert result.analyzed is True
        stats = await manager.get_database_statistics()
        assert stats.last_analyze is not None
        assert stats.last_vacuum is None

    @pytest.mark.asyncio
    async def test_vacuum_is_logged(self, fragmented_manager):
        await fragmented_manager.vacuum()

        history = fragmented_manager.audit.maintenance_history()
        assert len(history) == 1
        assert history[0]['operation'] == 'vacuum_analyze'
        assert history[0]['status'] == 'success'
        assert history[0]['size_after'] <= history[0]['size_before']

    @pytest.mark.asyncio
    async def test_vacuum_conflicts_with_maintenance(self, manager):
        manager.registry.claim_maintenance('vacuum')
        try:
            with pytest.raises(ConflictError):
                await manager.vacuum()
        finally:
            manager.registry.release_maintenance()

    @pytest.mark.asyncio
    async def test_cleanup_blocked_during_maintenance(self, manager):
        create_metrics_table(manager.store)
        with manager.registry.maintenance_slot('vacuum'):
            with pytest.raises(ConflictError):
                await manager.perform_cleanup('system_metrics')

    @pytest.mark.asyncio
    async def test_vacuum_failure_is_recorded(self, manager):
        with patch.object(manager.store, 'executescript_outside_transaction',
                          side_effect=sqlite3.OperationalError("disk full")):
            with pytest.raises(ExecutionError):
                await manager.vacuum()

        history = manager.audit.maintenance_history()
        assert history[0]['status'] == 'failed'
        assert 'disk full' in history[0]['error_message']
        assert manager.registry.maintenance_running() is None
