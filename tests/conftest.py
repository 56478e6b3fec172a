"""
Shared fixtures for the retention test suite.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from helpers import FakeClock
from retentiond.storage.retention_manager import RetentionManager


@pytest.fixture
def temp_dir():
    path = Path(tempfile.mkdtemp())
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "portal.db"


@pytest.fixture
def make_manager(db_path, temp_dir, clock):
    """Factory for managers sharing the temporary database and clock."""
    managers = []

    def _make(**overrides):
        settings = {
            'global': {'total_space_bytes': 100 * 1024 * 1024},
            'cleanup': {'archive_dir': str(temp_dir / 'archive')},
            'scheduler': {'snapshot_on_cycle': False},
        }
        for section, values in overrides.items():
            settings.setdefault(section, {}).update(values)
        manager = RetentionManager(str(db_path), overrides=settings, clock=clock)
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.store.close()


@pytest.fixture
def manager(make_manager):
    return make_manager()
