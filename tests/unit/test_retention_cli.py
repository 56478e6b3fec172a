"""
Unit tests for the retentiond command-line interface.
"""

import json
import logging
from datetime import datetime

import pytest
import structlog

from helpers import count_rows, create_metrics_table, insert_metrics
from retentiond.storage.retention_cli import build_parser, main
from retentiond.storage.retention_database import StoreConnection


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep log events out of the captured command output."""
    monkeypatch.setattr('retentiond.storage.retention_cli.configure_logging',
                        lambda level, json_output=False: None)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli(temp_dir, db_path):
    """Run the CLI against the temporary database and config file."""
    config_path = temp_dir / 'retention.yaml'

    def _run(*argv):
        return main(['--config', str(config_path), '--db', str(db_path), *argv])

    return _run


@pytest.fixture
def seeded_db(db_path):
    store = StoreConnection(str(db_path))
    create_metrics_table(store)
    insert_metrics(store, datetime.now(), 120, age_days=45)
    insert_metrics(store, datetime.now(), 30, age_days=2)
    store.close()
    return db_path


def read_rows(db_path):
    store = StoreConnection(str(db_path))
    try:
        return count_rows(store)
    finally:
        store.close()


class TestParser:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert 'usage: retentiond' in capsys.readouterr().out

    def test_set_policy_flags(self):
        args = build_parser().parse_args(
            ['set-policy', 'alerts', '--max-age-days', '60', '--no-enabled', '--frequency', 'weekly']
        )
        assert args.max_age_days == 60
        assert args.is_enabled is False
        assert args.cleanup_frequency == 'weekly'
        assert args.archival_enabled is None


class TestPolicyCommands:

    def test_policies_json(self, cli, capsys, temp_dir):
        assert cli('--json', 'policies') == 0

        policies = json.loads(capsys.readouterr().out)
        assert len(policies) == 8
        assert (temp_dir / 'retention.yaml').exists()

    def test_set_policy(self, cli, capsys):
        assert cli('set-policy', 'alerts', '--max-age-days', '60', '--max-records', '500') == 0
        capsys.readouterr()

        assert cli('--json', 'policies') == 0
        policies = {p['data_type']: p for p in json.loads(capsys.readouterr().out)}
        assert policies['alerts']['max_age_days'] == 60
        assert policies['alerts']['max_records'] == 500

    def test_invalid_policy_reports_validation_error(self, cli, capsys):
        assert cli('set-policy', 'alerts', '--max-age-days', '-5') == 1

        out = capsys.readouterr().out
        assert 'Error (validation)' in out

    def test_error_as_json(self, cli, capsys):
        assert cli('--json', 'cleanup', 'nope', '--yes') == 1

        error = json.loads(capsys.readouterr().out)
        assert error['error'] == 'not_found'
        assert error['retryable'] is False


class TestCleanupCommands:

    def test_estimate(self, cli, capsys, seeded_db):
        assert cli('--json', 'estimate', 'system_metrics') == 0

        estimates = json.loads(capsys.readouterr().out)
        assert estimates[0]['estimated_records'] == 120
        assert estimates[0]['impact_analysis']['performance_impact'] == 'low'

    def test_cleanup_with_confirmation_flag(self, cli, capsys, seeded_db):
        assert cli('cleanup', 'system_metrics', '--yes') == 0

        out = capsys.readouterr().out
        assert '120 records' in out
        assert read_rows(seeded_db) == 30

    def test_cleanup_declined(self, cli, capsys, seeded_db, monkeypatch):
        monkeypatch.setattr('builtins.input', lambda prompt: 'n')

        assert cli('cleanup', 'system_metrics') == 1

        assert 'Cleanup cancelled' in capsys.readouterr().out
        assert read_rows(seeded_db) == 150

    def test_history_after_cleanup(self, cli, capsys, seeded_db):
        cli('cleanup', 'system_metrics', '--yes')
        capsys.readouterr()

        assert cli('--json', 'history', '--data-type', 'system_metrics') == 0
        history = json.loads(capsys.readouterr().out)
        assert history[0]['status'] == 'success'
        assert history[0]['records_affected'] == 120

    def test_vacuum(self, cli, capsys, seeded_db):
        assert cli('--json', 'vacuum', '--no-analyze') == 0

        result = json.loads(capsys.readouterr().out)
        assert result['analyzed'] is False
        assert result['size_after'] <= result['size_before']

    def test_schedule_and_run(self, cli, capsys, seeded_db):
        assert cli('schedule', '--run') == 0

        out = capsys.readouterr().out
        assert 'system_metrics: completed' in out
        assert read_rows(seeded_db) == 30


class TestInspectionCommands:

    def test_status(self, cli, capsys, seeded_db):
        assert cli('status') == 0

        out = capsys.readouterr().out
        assert 'Data Retention System Status' in out
        assert 'system_metrics' in out

    def test_snapshot_and_predict(self, cli, capsys, seeded_db):
        assert cli('--json', 'snapshot') == 0
        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot['id'] == 1

        assert cli('--json', 'predict', '--days', '7', '--total-space', str(10 ** 9)) == 0
        predictions = json.loads(capsys.readouterr().out)
        assert [p['timeframe'] for p in predictions] == ['30d', '60d', '90d', '180d', '1y']

    def test_query(self, cli, capsys, seeded_db):
        assert cli('--json', 'query', 'system_metrics', '--equals', 'hostname=node-1',
                   '--order-by', 'timestamp', '--desc', '--limit', '5') == 0

        result = json.loads(capsys.readouterr().out)
        assert result['total_count'] == 30
        assert len(result['rows']) == 5
        assert result['has_more'] is True
        assert all(row['hostname'] == 'node-1' for row in result['rows'])

    def test_query_rejects_unknown_column(self, cli, capsys, seeded_db):
        assert cli('query', 'system_metrics', '--equals', 'nope=1') == 1
        assert 'Unknown column' in capsys.readouterr().out

    def test_query_malformed_filter(self, cli, capsys, seeded_db):
        assert cli('query', 'system_metrics', '--after', 'timestamp') == 1
        assert 'COLUMN=VALUE' in capsys.readouterr().out
