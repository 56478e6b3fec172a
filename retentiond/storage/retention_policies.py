"""
Retention policy persistence.

``RetentionPolicyStore`` is the only writer of the ``retention_policies``
table. Defaults are written by an explicit ``seed_defaults`` call at startup,
so reads are plain lookups.
"""

import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .retention_config import PolicySettings
from .retention_database import StoreConnection
from .retention_errors import NotFoundError, ValidationError
from .retention_models import CleanupFrequency, RetentionPolicy, format_timestamp, parse_timestamp

logger = structlog.get_logger(__name__)

DATA_TYPE_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]{0,63}$')

# Patchable fields and their column names
_POLICY_COLUMNS = (
    'max_age_days',
    'max_records',
    'compression_enabled',
    'archival_enabled',
    'cleanup_frequency',
    'is_enabled',
    'description',
    'category',
)


class PolicyPatch(BaseModel):
    """Partial policy update; accepts snake_case or camelCase field names."""
    model_config = ConfigDict(extra='forbid', alias_generator=to_camel, populate_by_name=True)

    data_type: Optional[StrictStr] = None
    max_age_days: Optional[StrictInt] = Field(default=None, gt=0)
    max_records: Optional[StrictInt] = Field(default=None, gt=0)
    compression_enabled: Optional[StrictBool] = None
    archival_enabled: Optional[StrictBool] = None
    cleanup_frequency: Optional[Literal['daily', 'weekly', 'monthly']] = None
    is_enabled: Optional[StrictBool] = None
    description: Optional[StrictStr] = None
    category: Optional[StrictStr] = None

    def changes(self) -> Dict[str, Any]:
        """Fields the caller actually supplied, excluding the key."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name in _POLICY_COLUMNS
        }


def validate_data_type(data_type: Any) -> str:
    if not isinstance(data_type, str) or not DATA_TYPE_PATTERN.match(data_type):
        raise ValidationError(
            f"Invalid data type {data_type!r}: expected an identifier such as 'system_metrics'",
            data_type=data_type if isinstance(data_type, str) else None,
        )
    return data_type


def _policy_from_row(row) -> RetentionPolicy:
    return RetentionPolicy(
        data_type=row['data_type'],
        max_age_days=row['max_age_days'],
        max_records=row['max_records'],
        compression_enabled=bool(row['compression_enabled']),
        archival_enabled=bool(row['archival_enabled']),
        cleanup_frequency=CleanupFrequency(row['cleanup_frequency']),
        is_enabled=bool(row['is_enabled']),
        description=row['description'],
        category=row['category'],
        last_run=parse_timestamp(row['last_run']),
        created_at=parse_timestamp(row['created_at']),
        updated_at=parse_timestamp(row['updated_at']),
    )


def _column_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


class RetentionPolicyStore:
    """Reads and writes retention policies."""

    def __init__(self, store: StoreConnection, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.clock = clock

    def seed_defaults(self, defaults: Mapping[str, PolicySettings]) -> int:
        """Insert the default policies that do not exist yet; returns how many were added."""
        now = format_timestamp(self.clock())
        inserted = 0
        with self.store.transaction() as conn:
            for data_type, settings in defaults.items():
                validate_data_type(data_type)
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO retention_policies (
                        data_type, max_age_days, max_records, compression_enabled,
                        archival_enabled, cleanup_frequency, is_enabled, description,
                        category, last_run, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                    """,
                    (
                        data_type, settings.max_age_days, settings.max_records,
                        int(settings.compression_enabled), int(settings.archival_enabled),
                        settings.cleanup_frequency, int(settings.is_enabled),
                        settings.description, settings.category, now, now,
                    ),
                )
                inserted += cursor.rowcount
        if inserted:
            logger.info("Default retention policies seeded", count=inserted)
        return inserted

    def list(self) -> List[RetentionPolicy]:
        rows = self.store.fetchall("SELECT * FROM retention_policies ORDER BY category, data_type")
        return [_policy_from_row(row) for row in rows]

    def find(self, data_type: str) -> Optional[RetentionPolicy]:
        row = self.store.fetchone("SELECT * FROM retention_policies WHERE data_type = ?", (data_type,))
        return _policy_from_row(row) if row is not None else None

    def get(self, data_type: str) -> RetentionPolicy:
        policy = self.find(data_type)
        if policy is None:
            raise NotFoundError(f"No retention policy for data type: {data_type}", data_type=data_type)
        return policy

    def validate(self, fields: Mapping[str, Any]) -> PolicyPatch:
        """Validate a patch without writing anything."""
        if not isinstance(fields, Mapping):
            raise ValidationError("Policy fields must be a mapping")
        try:
            return PolicyPatch.model_validate(dict(fields))
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError("Invalid retention policy", errors=errors)

    def upsert(self, data_type: str, fields: Mapping[str, Any]) -> RetentionPolicy:
        """Create or partially update the policy for ``data_type``."""
        validate_data_type(data_type)
        patch = self.validate(fields)
        if patch.data_type is not None and patch.data_type != data_type:
            raise ValidationError(
                f"Data type in fields ({patch.data_type}) does not match {data_type}",
                data_type=data_type,
            )
        changes = patch.changes()
        for required in ('max_age_days', 'cleanup_frequency', 'is_enabled',
                         'compression_enabled', 'archival_enabled'):
            if required in changes and changes[required] is None:
                raise ValidationError(f"{to_camel(required)} cannot be null", data_type=data_type)

        now = format_timestamp(self.clock())
        with self.store.transaction() as conn:
            existing = self.find(data_type)
            if existing is None:
                if changes.get('max_age_days') is None:
                    raise ValidationError("maxAgeDays is required when creating a policy",
                                          data_type=data_type)
                values = {
                    'max_records': None,
                    'compression_enabled': False,
                    'archival_enabled': False,
                    'cleanup_frequency': CleanupFrequency.DAILY.value,
                    'is_enabled': True,
                    'description': "",
                    'category': "general",
                }
                values.update(changes)
                columns = ['data_type'] + list(values) + ['created_at', 'updated_at']
                params = [data_type] + [_column_value(v) for v in values.values()] + [now, now]
                conn.execute(
                    f"INSERT INTO retention_policies ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    params,
                )
                action = "created"
            elif changes:
                assignments = ', '.join(f"{column} = ?" for column in changes)
                conn.execute(
                    f"UPDATE retention_policies SET {assignments}, updated_at = ? WHERE data_type = ?",
                    [_column_value(v) for v in changes.values()] + [now, data_type],
                )
                action = "updated"
            else:
                action = "unchanged"

        logger.info("Retention policy saved", data_type=data_type, action=action,
                    fields=sorted(changes))
        return self.get(data_type)

    def mark_last_run(self, data_type: str, when: datetime):
        """Persist the time of the last terminal cleanup run."""
        updated = self.store.execute(
            "UPDATE retention_policies SET last_run = ? WHERE data_type = ?",
            (format_timestamp(when), data_type),
        )
        if updated == 0:
            raise NotFoundError(f"No retention policy for data type: {data_type}", data_type=data_type)
