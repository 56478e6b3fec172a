"""
Typed table queries for ad hoc introspection.

Filters are a closed set of variants validated against the table's actual
columns before being rendered into a bounded, parameterized statement.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Sequence, Tuple, Union

from .retention_database import StoreConnection, quote_identifier
from .retention_errors import NotFoundError, ValidationError

MAX_QUERY_LIMIT = 1000


@dataclass(frozen=True)
class Equals:
    column: str
    value: Any


@dataclass(frozen=True)
class Contains:
    column: str
    text: str


@dataclass(frozen=True)
class Before:
    column: str
    value: Any


@dataclass(frozen=True)
class After:
    column: str
    value: Any


@dataclass(frozen=True)
class IsNull:
    column: str


Filter = Union[Equals, Contains, Before, After, IsNull]

_FILTER_TYPES = {
    'equals': Equals,
    'contains': Contains,
    'before': Before,
    'after': After,
    'is_null': IsNull,
}


@dataclass(frozen=True)
class TableQuery:
    """Bounded read of one table."""
    table_name: str
    filters: Tuple[Filter, ...] = ()
    order_by: Union[str, None] = None
    descending: bool = False
    limit: int = 100
    offset: int = 0


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    total_count: int
    has_more: bool
    columns: List[str] = field(default_factory=list)
    execution_time_ms: int = 0


def filter_from_dict(raw: Dict[str, Any]) -> Filter:
    """Build a filter from ``{"op": ..., "column": ..., "value": ...}``."""
    op = raw.get('op')
    column = raw.get('column')
    if op not in _FILTER_TYPES:
        raise ValidationError(f"Unknown filter operation: {op!r}")
    if not isinstance(column, str) or not column:
        raise ValidationError("Filter column is required")
    if op == 'is_null':
        return IsNull(column)
    if 'value' not in raw:
        raise ValidationError(f"Filter '{op}' on {column} requires a value")
    if op == 'contains':
        return Contains(column, str(raw['value']))
    return _FILTER_TYPES[op](column, raw['value'])


def _sql_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def render_filter(condition: Filter) -> Tuple[str, List[Any]]:
    """Render one filter as a SQL condition and its parameters."""
    column = quote_identifier(condition.column)
    if isinstance(condition, Equals):
        return f"{column} = ?", [_sql_value(condition.value)]
    if isinstance(condition, Contains):
        escaped = condition.text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        return f"{column} LIKE ? ESCAPE '\\'", [f"%{escaped}%"]
    if isinstance(condition, Before):
        return f"{column} < ?", [_sql_value(condition.value)]
    if isinstance(condition, After):
        return f"{column} >= ?", [_sql_value(condition.value)]
    if isinstance(condition, IsNull):
        return f"{column} IS NULL", []
    raise ValidationError(f"Unsupported filter: {condition!r}")


def validate_query(query: TableQuery, columns: Sequence[str]):
    """Check the query against the table's known columns."""
    errors = []
    known = set(columns)
    for condition in query.filters:
        if condition.column not in known:
            errors.append(f"Unknown column '{condition.column}' on {query.table_name}")
    if query.order_by is not None and query.order_by not in known:
        errors.append(f"Cannot order by unknown column '{query.order_by}'")
    if not 0 < query.limit <= MAX_QUERY_LIMIT:
        errors.append(f"Limit must be between 1 and {MAX_QUERY_LIMIT}")
    if query.offset < 0:
        errors.append("Offset must not be negative")
    if errors:
        raise ValidationError("Invalid table query", errors=errors)


def compile_query(query: TableQuery, columns: Sequence[str]) -> Tuple[str, str, List[Any]]:
    """Return (select_sql, count_sql, where_params) for a validated query."""
    validate_query(query, columns)

    clauses = []
    params: List[Any] = []
    for condition in query.filters:
        clause, clause_params = render_filter(condition)
        clauses.append(clause)
        params.extend(clause_params)

    table = quote_identifier(query.table_name)
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    order = ""
    if query.order_by:
        direction = "DESC" if query.descending else "ASC"
        order = f" ORDER BY {quote_identifier(query.order_by)} {direction}"

    select_sql = f"SELECT * FROM {table}{where}{order} LIMIT {int(query.limit)} OFFSET {int(query.offset)}"
    count_sql = f"SELECT COUNT(*) FROM {table}{where}"
    return select_sql, count_sql, params


def run_query(store: StoreConnection, query: TableQuery) -> QueryResult:
    """Execute a table query against the store."""
    if not store.table_exists(query.table_name):
        raise NotFoundError(f"Table not found: {query.table_name}")

    start = time.monotonic()
    columns = store.table_columns(query.table_name)
    select_sql, count_sql, params = compile_query(query, columns)

    total_count = store.scalar(count_sql, params, default=0)
    rows = [dict(row) for row in store.fetchall(select_sql, params)]

    return QueryResult(
        rows=rows,
        total_count=total_count,
        has_more=query.offset + len(rows) < total_count,
        columns=list(columns),
        execution_time_ms=int((time.monotonic() - start) * 1000),
    )
