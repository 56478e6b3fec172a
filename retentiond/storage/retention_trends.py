"""
Growth analysis and capacity prediction for the retention system.

Both components compute on demand from the snapshot history recorded by
``UsageMetricsCollector``; nothing here writes to the store.
"""

import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import psutil
import structlog

from .retention_config import MonitoringSettings
from .retention_errors import ValidationError
from .retention_models import PREDICTION_TIMEFRAMES, GrowthRate, StoragePrediction, Trend
from .retention_monitoring import UsageMetricsCollector

logger = structlog.get_logger(__name__)

SECONDS_PER_DAY = 86400.0

# Windows (days) behind the daily / weekly / monthly growth figures
DAILY_WINDOW = 1
WEEKLY_WINDOW = 7
MONTHLY_WINDOW = 30


@dataclass
class FootprintGrowth:
    """Growth of the whole store footprint over a lookback window."""
    window_days: int
    current_size: int
    daily_growth_bytes: float
    snapshot_count: int
    interval_rates: List[float] = field(default_factory=list)


def daily_rate(points: Sequence[Tuple[datetime, int]]) -> float:
    """Bytes per day between the first and last point; 0 with fewer than two points."""
    if len(points) < 2:
        return 0.0
    (first_time, first_size), (last_time, last_size) = points[0], points[-1]
    days = (last_time - first_time).total_seconds() / SECONDS_PER_DAY
    if days <= 0:
        return 0.0
    return (last_size - first_size) / days


def interval_rates(points: Sequence[Tuple[datetime, int]]) -> List[float]:
    """Bytes per day for every pair of consecutive points."""
    rates = []
    for (t1, s1), (t2, s2) in zip(points, points[1:]):
        days = (t2 - t1).total_seconds() / SECONDS_PER_DAY
        if days > 0:
            rates.append((s2 - s1) / days)
    return rates


def classify_trend(growth: float, current_size: float, threshold_percent: float) -> Trend:
    threshold = abs(current_size) * threshold_percent / 100.0
    if growth > threshold:
        return Trend.INCREASING
    if growth < -threshold:
        return Trend.DECREASING
    return Trend.STABLE


class GrowthAnalyzer:
    """Derives per-table and whole-store growth from snapshot history."""

    def __init__(self, collector: UsageMetricsCollector,
                 settings: Optional[MonitoringSettings] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.collector = collector
        self.settings = settings or MonitoringSettings()
        self.clock = clock

    @staticmethod
    def _within(points: Sequence[Tuple[datetime, int]], since: datetime) -> List[Tuple[datetime, int]]:
        return [point for point in points if point[0] >= since]

    def growth_rates(self, window_days: Optional[int] = None) -> List[GrowthRate]:
        """Growth rate of every table present in the snapshot history."""
        trend_window = window_days or self.settings.growth_window_days
        if trend_window <= 0:
            raise ValidationError("Growth window must be a positive number of days")

        now = self.clock()
        horizon = max(MONTHLY_WINDOW, trend_window)
        rates = []
        for table_name in self.collector.tracked_tables():
            points = self.collector.table_history(table_name, since=now - timedelta(days=horizon))

            daily = daily_rate(self._within(points, now - timedelta(days=DAILY_WINDOW)))
            weekly = daily_rate(self._within(points, now - timedelta(days=WEEKLY_WINDOW))) * 7
            monthly = daily_rate(self._within(points, now - timedelta(days=MONTHLY_WINDOW))) * 30

            trend_points = self._within(points, now - timedelta(days=trend_window))
            if len(trend_points) < 2:
                trend = Trend.STABLE
            else:
                growth = trend_points[-1][1] - trend_points[0][1]
                trend = classify_trend(growth, trend_points[-1][1],
                                       self.settings.trend_threshold_percent)

            rates.append(GrowthRate(
                table_name=table_name,
                daily_growth_bytes=daily,
                weekly_growth_bytes=weekly,
                monthly_growth_bytes=monthly,
                trend=trend,
            ))

        logger.debug("Growth rates computed", tables=len(rates), window_days=trend_window)
        return rates

    def total_growth(self, window_days: Optional[int] = None) -> FootprintGrowth:
        """Growth of the store footprint across the snapshots inside the window."""
        window = window_days or self.settings.growth_window_days
        if window <= 0:
            raise ValidationError("Growth window must be a positive number of days")

        snapshots = self.collector.history(since=self.clock() - timedelta(days=window))
        points = [(snapshot.timestamp, snapshot.footprint) for snapshot in snapshots]
        current_size = points[-1][1] if points else self.collector.footprint()

        return FootprintGrowth(
            window_days=window,
            current_size=current_size,
            daily_growth_bytes=daily_rate(points),
            snapshot_count=len(points),
            interval_rates=interval_rates(points),
        )


def prediction_confidence(growth: FootprintGrowth, days: int) -> int:
    """Confidence (0-100) in a projection ``days`` ahead.

    Combines how consistent the per-interval growth rates are, how many
    intervals were sampled (saturating at a week's worth) and a decay for
    longer horizons.
    """
    if growth.snapshot_count < 2 or not growth.interval_rates:
        return 0

    rates = growth.interval_rates
    mean = statistics.fmean(rates)
    deviation = statistics.pstdev(rates) if len(rates) > 1 else 0.0
    if mean == 0:
        consistency = 1.0 if deviation == 0 else 0.0
    else:
        consistency = 1.0 / (1.0 + deviation / abs(mean))

    sample_factor = min(1.0, len(rates) / 7.0)
    time_decay = max(0.3, 1.0 - (days / 365.0) * 0.7)

    confidence = 100.0 * consistency * sample_factor * time_decay
    return int(round(min(100.0, max(0.0, confidence))))


class CapacityPredictor:
    """Projects future store size and recommends an action per timeframe."""

    def __init__(self, analyzer: GrowthAnalyzer, db_path: Path,
                 settings: Optional[MonitoringSettings] = None,
                 total_space_bytes: Optional[int] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.analyzer = analyzer
        self.db_path = Path(db_path)
        self.settings = settings or MonitoringSettings()
        self.total_space_bytes = total_space_bytes
        self.clock = clock

    def resolve_total_space(self, total_space: Optional[int] = None) -> int:
        """Explicit value, then configured capacity, then the filesystem's capacity."""
        if total_space is not None:
            if total_space <= 0:
                raise ValidationError("Total space must be a positive number of bytes")
            return int(total_space)
        if self.total_space_bytes:
            return int(self.total_space_bytes)
        return int(self._filesystem_usage().total)

    def _filesystem_usage(self):
        directory = self.db_path.resolve().parent
        while not directory.exists() and directory != directory.parent:
            directory = directory.parent
        return psutil.disk_usage(str(directory))

    def available_space(self, footprint: int) -> Tuple[int, int]:
        """(free, total) bytes; a configured capacity is a budget the footprint draws from."""
        if self.total_space_bytes:
            total = int(self.total_space_bytes)
            return max(0, total - footprint), total
        disk = self._filesystem_usage()
        return int(disk.free), int(disk.total)

    def recommended_action(self, predicted_size: float, total_space: int) -> str:
        usage_percent = predicted_size / total_space * 100
        if usage_percent >= self.settings.critical_threshold_percent:
            return "Critical: Implement aggressive cleanup policies"
        if usage_percent >= self.settings.warning_threshold_percent:
            return "Warning: Review and update retention policies"
        if usage_percent >= self.settings.caution_threshold_percent:
            return "Consider implementing cleanup policies"
        return "Monitor usage"

    def projected_full_date(self, growth: FootprintGrowth, total_space: int) -> Optional[datetime]:
        if growth.daily_growth_bytes <= 0:
            return None
        now = self.clock()
        remaining = total_space - growth.current_size
        if remaining <= 0:
            return now
        return now + timedelta(days=remaining / growth.daily_growth_bytes)

    def predict(self, total_space: Optional[int] = None,
                window_days: Optional[int] = None) -> List[StoragePrediction]:
        """One prediction per timeframe (30d, 60d, 90d, 180d, 1y)."""
        space = self.resolve_total_space(total_space)
        growth = self.analyzer.total_growth(window_days)
        full_date = self.projected_full_date(growth, space)

        predictions = []
        for timeframe, days in PREDICTION_TIMEFRAMES.items():
            predicted = max(0.0, growth.current_size + growth.daily_growth_bytes * days)
            predictions.append(StoragePrediction(
                timeframe=timeframe,
                predicted_size_bytes=int(predicted),
                confidence_level=prediction_confidence(growth, days),
                projected_full_date=full_date,
                recommended_action=self.recommended_action(predicted, space),
            ))

        logger.info("Capacity predictions computed",
                    window_days=growth.window_days,
                    snapshots=growth.snapshot_count,
                    daily_growth_bytes=round(growth.daily_growth_bytes, 2),
                    total_space=space)
        return predictions
