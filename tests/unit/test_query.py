"""
Unit tests for typed table queries.
"""

import pytest

from helpers import create_metrics_table, insert_metrics
from retentiond.storage import After, Before, Contains, Equals, IsNull, TableQuery
from retentiond.storage.retention_errors import NotFoundError, ValidationError
from retentiond.storage.retention_query import compile_query, filter_from_dict, render_filter

COLUMNS = ['id', 'timestamp', 'cpu_percent', 'memory_percent', 'hostname']


@pytest.fixture
def query_manager(manager):
    create_metrics_table(manager.store)
    insert_metrics(manager.store, manager.clock(), 50, age_days=1)
    manager.store.execute("UPDATE system_metrics SET hostname = NULL WHERE id <= 5")
    manager.store.execute("UPDATE system_metrics SET hostname = 'edge_50%' WHERE id = 6")
    return manager


class TestCompile:

    def test_parameterized_filters(self):
        query = TableQuery('system_metrics', filters=(Equals('hostname', 'node-1'),
                                                      After('cpu_percent', 20)),
                           order_by='timestamp', descending=True, limit=10, offset=5)

        select_sql, count_sql, params = compile_query(query, COLUMNS)

        assert select_sql == (
            'SELECT * FROM "system_metrics" WHERE "hostname" = ? AND "cpu_percent" >= ? '
            'ORDER BY "timestamp" DESC LIMIT 10 OFFSET 5'
        )
        assert count_sql == 'SELECT COUNT(*) FROM "system_metrics" WHERE "hostname" = ? AND "cpu_percent" >= ?'
        assert params == ['node-1', 20]

    def test_contains_escapes_wildcards(self):
        clause, params = render_filter(Contains('hostname', '50%_'))
        assert clause == '"hostname" LIKE ? ESCAPE \'\\\''
        assert params == ['%50\\%\\_%']

    @pytest.mark.parametrize('query', [
        TableQuery('system_metrics', filters=(Equals('password', 'x'),)),
        TableQuery('system_metrics', order_by='1; DROP TABLE system_metrics'),
        TableQuery('system_metrics', limit=0),
        TableQuery('system_metrics', limit=5000),
        TableQuery('system_metrics', offset=-1),
    ])
    def test_invalid_queries(self, query):
        with pytest.raises(ValidationError):
            compile_query(query, COLUMNS)

    def test_all_errors_reported(self):
        query = TableQuery('system_metrics', filters=(IsNull('a'), IsNull('b')), limit=0)
        with pytest.raises(ValidationError) as exc_info:
            compile_query(query, COLUMNS)
        assert len(exc_info.value.errors) == 3


class TestFilterFromDict:

    def test_known_operations(self):
        assert filter_from_dict({'op': 'equals', 'column': 'a', 'value': 1}) == Equals('a', 1)
        assert filter_from_dict({'op': 'contains', 'column': 'a', 'value': 5}) == Contains('a', '5')
        assert filter_from_dict({'op': 'before', 'column': 'a', 'value': 'x'}) == Before('a', 'x')
        assert filter_from_dict({'op': 'is_null', 'column': 'a'}) == IsNull('a')

    @pytest.mark.parametrize('raw', [
        {'op': 'like', 'column': 'a', 'value': 1},
        {'op': 'equals', 'value': 1},
        {'op': 'equals', 'column': 'a'},
    ])
    def test_rejected(self, raw):
        with pytest.raises(ValidationError):
            filter_from_dict(raw)


class TestRunQuery:

    def test_pagination(self, query_manager):
        result = query_manager.query_table(
            TableQuery('system_metrics', order_by='id', limit=20, offset=40)
        )

        assert result.total_count == 50
        assert [row['id'] for row in result.rows] == list(range(41, 51))
        assert result.has_more is False
        assert result.columns == COLUMNS

    def test_filters(self, query_manager):
        nulls = query_manager.query_table(TableQuery('system_metrics', filters=(IsNull('hostname'),)))
        literal = query_manager.query_table(
            TableQuery('system_metrics', filters=(Contains('hostname', '50%'),))
        )

        assert nulls.total_count == 5
        assert [row['id'] for row in literal.rows] == [6]

    def test_has_more(self, query_manager):
        result = query_manager.query_table(TableQuery('system_metrics', limit=10))
        assert len(result.rows) == 10
        assert result.has_more is True

    def test_unknown_table(self, manager):
        with pytest.raises(NotFoundError):
            manager.query_table(TableQuery('nope'))
