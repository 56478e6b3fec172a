"""
Data models for the retention system.

This module contains all the data classes and enums used by the retention system.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class CleanupFrequency(Enum):
    """Cadence at which a retention policy is enforced."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class OperationType(Enum):
    """Origin of a cleanup operation."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EMERGENCY = "emergency"


class OperationStatus(Enum):
    """Audit status of a cleanup or maintenance operation."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


class JobStatus(Enum):
    """Lifecycle of a scheduled cleanup job."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PARTIAL)


class Trend(Enum):
    """Direction of table growth."""
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ImpactLevel(Enum):
    """Severity buckets used by cleanup impact analysis."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Prediction horizons in days
PREDICTION_TIMEFRAMES = {
    '30d': 30,
    '60d': 60,
    '90d': 90,
    '180d': 180,
    '1y': 365,
}


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


class _Serializable:
    """Mixin providing a JSON-friendly dictionary view."""

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class TableUsage(_Serializable):
    """Size and row count of a single table. ``None`` means unknown."""
    table_name: str
    record_count: Optional[int]
    size_bytes: Optional[int]
    index_size_bytes: Optional[int]

    @property
    def average_row_size(self) -> Optional[float]:
        if not self.record_count or self.size_bytes is None:
            return None
        return self.size_bytes / self.record_count

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['average_row_size'] = self.average_row_size
        return data


@dataclass(frozen=True)
class UsageSnapshot(_Serializable):
    """Point-in-time measurement of table and file sizes."""
    timestamp: datetime
    total_size: int
    wal_size: int
    shm_size: int
    table_count: int
    index_count: int = 0
    per_table: List[TableUsage] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def footprint(self) -> int:
        """Bytes on disk across the main file and its side files."""
        return self.total_size + self.wal_size + self.shm_size


@dataclass(frozen=True)
class GrowthRate(_Serializable):
    """Derived growth of one table (bytes)."""
    table_name: str
    daily_growth_bytes: float
    weekly_growth_bytes: float
    monthly_growth_bytes: float
    trend: Trend


@dataclass(frozen=True)
class StoragePrediction(_Serializable):
    """Extrapolated store size for one timeframe."""
    timeframe: str
    predicted_size_bytes: int
    confidence_level: int
    projected_full_date: Optional[datetime]
    recommended_action: str


@dataclass(frozen=True)
class DiskUsageMetrics(_Serializable):
    """Live usage together with its growth, predictions and free space."""
    usage: UsageSnapshot
    growth_rates: List[GrowthRate]
    predictions: List[StoragePrediction]
    last_cleanup: Optional[datetime]
    free_space: int
    total_space: int

    @property
    def table_usages(self) -> List[TableUsage]:
        return self.usage.per_table

    @property
    def used_percent(self) -> float:
        if self.total_space <= 0:
            return 0.0
        return 100.0 * (self.total_space - self.free_space) / self.total_space


@dataclass
class RetentionPolicy(_Serializable):
    """Retention rule for one data type."""
    data_type: str
    max_age_days: int
    max_records: Optional[int] = None
    compression_enabled: bool = False
    archival_enabled: bool = False
    cleanup_frequency: CleanupFrequency = CleanupFrequency.DAILY
    is_enabled: bool = True
    description: str = ""
    category: str = "general"
    last_run: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ImpactAnalysis(_Serializable):
    """Risk classification attached to a cleanup estimate."""
    performance_impact: ImpactLevel
    data_integrity_risk: ImpactLevel
    recommended_time: str


@dataclass(frozen=True)
class CleanupEstimate(_Serializable):
    """Dry-run result for a data type; never persisted."""
    data_type: str
    estimated_records: int
    estimated_bytes: int
    oldest_record: Optional[datetime]
    newest_record: Optional[datetime]
    impact_analysis: ImpactAnalysis


@dataclass
class CleanupOperation(_Serializable):
    """Audit record of a single cleanup run."""
    id: Optional[int]
    operation_type: OperationType
    data_type: str
    records_affected: int
    bytes_freed: int
    duration_ms: int
    status: OperationStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class VacuumResult(_Serializable):
    """Outcome of a vacuum run."""
    size_before: int
    size_after: int
    duration_ms: int
    analyzed: bool

    @property
    def bytes_reclaimed(self) -> int:
        return max(0, self.size_before - self.size_after)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['bytes_reclaimed'] = self.bytes_reclaimed
        return data


@dataclass(frozen=True)
class DatabaseStatistics(_Serializable):
    """Store-level health snapshot."""
    total_tables: int
    total_records: int
    total_indexes: int
    total_size: int
    fragmentation_level: float
    last_vacuum: Optional[datetime]
    last_analyze: Optional[datetime]
    wal_mode: bool
    page_size: int
    cache_size: int


@dataclass(frozen=True)
class DataTypeTarget(_Serializable):
    """Physical location of the rows governed by a data type."""
    data_type: str
    table_name: str
    timestamp_column: str
    timestamp_format: str = "iso"


@dataclass
class CleanupJob(_Serializable):
    """In-memory record of a queued or running cleanup job."""
    id: str
    data_type: str
    operation_type: OperationType
    status: JobStatus
    enqueued_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    operation_id: Optional[int] = None
    error_message: Optional[str] = None


def format_timestamp(value: datetime) -> str:
    """Timestamp format used for every engine-owned column."""
    return value.isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (ISO-8601 text or epoch seconds) into a naive datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed
