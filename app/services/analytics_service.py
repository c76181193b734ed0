"""
Analytics Service — read-only queries over the usage snapshot history.

Nothing here writes to the database. Every query degrades to an empty or
"not enough data" result rather than raising when history is sparse.

The forecast is a simple heuristic: an ordinary least-squares line through
the trailing week of ``used_bytes`` samples, extrapolated to the data limit.
It makes no claim of statistical rigour and should be presented as a rough
projection.
"""

from __future__ import annotations

import enum
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.config import settings as platform_settings
from app.models.access_key import AccessKey, KeyType
from app.models.dynamic_access_key import DynamicAccessKey
from app.models.usage_snapshot import UsageSnapshot
from app.services.snapshot_service import Clock, utcnow
from app.services.usage_ledger import as_utc

logger = logging.getLogger(__name__)

BASELINE_WINDOW = timedelta(days=7)
DEFAULT_ANOMALY_THRESHOLD = 3.0


class TimeRange(str, enum.Enum):
    last_24h = "24h"
    last_7d = "7d"
    last_30d = "30d"

    @property
    def span(self) -> timedelta:
        return _RANGE_SPANS[self]

    def cutoff(self, now: datetime) -> datetime:
        return now - self.span


_RANGE_SPANS = {
    TimeRange.last_24h: timedelta(hours=24),
    TimeRange.last_7d: timedelta(days=7),
    TimeRange.last_30d: timedelta(days=30),
}


class Confidence(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


@dataclass(frozen=True)
class ConsumerSummary:
    id: UUID
    key_type: KeyType
    name: str
    email: str | None
    status: str
    server_name: str | None
    country_code: str | None
    delta_bytes: int
    total_used_bytes: int
    data_limit_bytes: int | None


@dataclass(frozen=True)
class AnomalySummary:
    id: UUID
    key_type: KeyType
    name: str
    email: str | None
    status: str
    server_name: str | None
    recent_delta_bytes: int
    baseline_delta_bytes: int
    ratio: float


@dataclass(frozen=True)
class ForecastResult:
    key_id: UUID
    key_type: KeyType
    confidence: Confidence
    message: str
    key_name: str | None = None
    has_quota: bool = False
    current_usage_bytes: int | None = None
    data_limit_bytes: int | None = None
    usage_percent: int | None = None
    daily_rate_bytes: int | None = None
    days_to_quota: int | None = None


@dataclass(frozen=True)
class UsagePoint:
    used_bytes: int
    delta_bytes: int
    timestamp: datetime


@dataclass(frozen=True)
class AnalyticsSummary:
    range: TimeRange
    total_delta_bytes: int
    active_keys_count: int
    anomaly_count: int
    snapshot_count: int


def fit_slope(points: Sequence[tuple[float, float]]) -> float:
    """Least-squares slope of y over x. Degenerate inputs give 0.0, never NaN."""
    n = len(points)
    if n < 2:
        return 0.0
    sum_x = sum(x for x, _ in points)
    sum_y = sum(y for _, y in points)
    sum_xy = sum(x * y for x, y in points)
    sum_x2 = sum(x * x for x, _ in points)
    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return 0.0
    return (n * sum_xy - sum_x * sum_y) / denominator


def confidence_for(sample_count: int) -> Confidence:
    if sample_count >= 10:
        return Confidence.high
    if sample_count >= 5:
        return Confidence.medium
    return Confidence.low


def _key_model(key_type: KeyType):
    return AccessKey if key_type == KeyType.access_key else DynamicAccessKey


class AnalyticsService:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def _delta_totals(
        self,
        start: datetime,
        end: datetime | None = None,
        key_type: KeyType | None = None,
    ) -> dict[tuple[UUID, KeyType], int]:
        stmt = select(
            UsageSnapshot.key_id,
            UsageSnapshot.key_type,
            func.coalesce(func.sum(UsageSnapshot.delta_bytes), 0),
        ).where(UsageSnapshot.created_at >= start)
        if end is not None:
            stmt = stmt.where(UsageSnapshot.created_at < end)
        if key_type is not None:
            stmt = stmt.where(UsageSnapshot.key_type == key_type)
        stmt = stmt.group_by(UsageSnapshot.key_id, UsageSnapshot.key_type)
        return {(row[0], row[1]): int(row[2]) for row in self.db.execute(stmt)}

    def _anomalous(self, time_range: TimeRange, threshold: float) -> list[tuple[UUID, KeyType, int, int, float]]:
        cutoff = time_range.cutoff(self.clock())
        recent = self._delta_totals(cutoff)
        baseline = self._delta_totals(cutoff - BASELINE_WINDOW, end=cutoff)
        floor = platform_settings.anomaly_baseline_floor_bytes

        flagged = []
        for (key_id, key_type), recent_delta in recent.items():
            baseline_delta = baseline.get((key_id, key_type), 0)
            # The floor also rules out division by zero.
            if baseline_delta < floor:
                continue
            ratio = recent_delta / baseline_delta
            if ratio >= threshold:
                flagged.append((key_id, key_type, recent_delta, baseline_delta, ratio))
        flagged.sort(key=lambda item: item[4], reverse=True)
        return flagged

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def top_consumers(
        self,
        time_range: TimeRange = TimeRange.last_24h,
        limit: int = 10,
        key_type: KeyType | None = None,
    ) -> list[ConsumerSummary]:
        """Keys ranked by bytes transferred within the range, largest first."""
        cutoff = time_range.cutoff(self.clock())
        total = func.sum(UsageSnapshot.delta_bytes).label("total")
        stmt = select(UsageSnapshot.key_id, UsageSnapshot.key_type, total).where(UsageSnapshot.created_at >= cutoff)
        if key_type is not None:
            stmt = stmt.where(UsageSnapshot.key_type == key_type)
        stmt = (
            stmt.group_by(UsageSnapshot.key_id, UsageSnapshot.key_type)
            .order_by(total.desc(), UsageSnapshot.key_id)
            .limit(limit)
        )

        results = []
        for key_id, row_type, delta in self.db.execute(stmt).all():
            key = self.db.get(_key_model(row_type), key_id)
            if key is None:
                logger.debug("Dropping consumer %s %s: key no longer exists", row_type.value, key_id)
                continue
            server = getattr(key, "server", None)
            results.append(
                ConsumerSummary(
                    id=key.id,
                    key_type=row_type,
                    name=key.name,
                    email=key.email,
                    status=key.status.value,
                    server_name=server.name if server else None,
                    country_code=server.country_code if server else None,
                    delta_bytes=int(delta or 0),
                    total_used_bytes=int(key.used_bytes or 0),
                    data_limit_bytes=key.data_limit_bytes,
                )
            )
        return results

    def anomalies(
        self,
        time_range: TimeRange = TimeRange.last_24h,
        threshold: float = DEFAULT_ANOMALY_THRESHOLD,
    ) -> list[AnomalySummary]:
        """Keys whose usage in the range is at least ``threshold`` times the prior week's."""
        flagged = self._anomalous(time_range, threshold)[: platform_settings.anomaly_result_limit]
        results = []
        for key_id, key_type, recent_delta, baseline_delta, ratio in flagged:
            key = self.db.get(_key_model(key_type), key_id)
            server = getattr(key, "server", None) if key is not None else None
            results.append(
                AnomalySummary(
                    id=key_id,
                    key_type=key_type,
                    name=key.name if key else "Unknown",
                    email=key.email if key else None,
                    status=key.status.value if key else "unknown",
                    server_name=server.name if server else None,
                    recent_delta_bytes=recent_delta,
                    baseline_delta_bytes=baseline_delta,
                    ratio=round(ratio, 1),
                )
            )
        return results

    def forecast(self, key_id: UUID, key_type: KeyType = KeyType.access_key) -> ForecastResult:
        key = self.db.get(_key_model(key_type), key_id)
        if key is None:
            return ForecastResult(
                key_id=key_id,
                key_type=key_type,
                confidence=Confidence.low,
                message="Key not found",
            )

        limit = key.data_limit_bytes
        if not limit:
            return ForecastResult(
                key_id=key_id,
                key_type=key_type,
                key_name=key.name,
                confidence=Confidence.high,
                message="No data limit set",
            )

        used = int(key.used_bytes or 0)
        base = {
            "key_id": key_id,
            "key_type": key_type,
            "key_name": key.name,
            "has_quota": True,
            "current_usage_bytes": used,
            "data_limit_bytes": limit,
            "usage_percent": round(used * 100 / limit),
        }

        cutoff = self.clock() - timedelta(days=platform_settings.forecast_window_days)
        rows = self.db.execute(
            select(UsageSnapshot.used_bytes, UsageSnapshot.created_at)
            .where(UsageSnapshot.key_id == key_id)
            .where(UsageSnapshot.key_type == key_type)
            .where(UsageSnapshot.created_at >= cutoff)
            .order_by(UsageSnapshot.created_at)
        ).all()

        if len(rows) < 2:
            return ForecastResult(
                **base,
                confidence=Confidence.low,
                message="Not enough data for forecast (need at least 2 snapshots)",
            )

        first = as_utc(rows[0][1])
        points = [((as_utc(created_at) - first).total_seconds() / 86400, float(used_bytes)) for used_bytes, created_at in rows]
        slope = fit_slope(points)

        if slope <= 0:
            return ForecastResult(
                **base,
                daily_rate_bytes=0,
                confidence=Confidence.medium,
                message="Usage is stable or decreasing",
            )

        days_to_quota = max(0, math.ceil((limit - used) / slope))
        return ForecastResult(
            **base,
            daily_rate_bytes=round(slope),
            days_to_quota=days_to_quota,
            confidence=confidence_for(len(rows)),
            message=(
                f"Projected to reach quota in ~{days_to_quota} days"
                if days_to_quota > 0
                else "Quota already reached or exceeded"
            ),
        )

    def usage_history(self, key_id: UUID, time_range: TimeRange = TimeRange.last_7d) -> list[UsagePoint]:
        cutoff = time_range.cutoff(self.clock())
        rows = self.db.execute(
            select(UsageSnapshot.used_bytes, UsageSnapshot.delta_bytes, UsageSnapshot.created_at)
            .where(UsageSnapshot.key_id == key_id)
            .where(UsageSnapshot.created_at >= cutoff)
            .order_by(UsageSnapshot.created_at)
        ).all()
        return [
            UsagePoint(used_bytes=int(used), delta_bytes=int(delta), timestamp=as_utc(created_at))
            for used, delta, created_at in rows
        ]

    def summary(self, time_range: TimeRange = TimeRange.last_24h) -> AnalyticsSummary:
        cutoff = time_range.cutoff(self.clock())
        total_delta, snapshot_count = self.db.execute(
            select(
                func.coalesce(func.sum(UsageSnapshot.delta_bytes), 0),
                func.count(UsageSnapshot.id),
            ).where(UsageSnapshot.created_at >= cutoff)
        ).one()
        active_keys = self.db.scalar(
            select(func.count(func.distinct(UsageSnapshot.key_id)))
            .where(UsageSnapshot.created_at >= cutoff)
            .where(UsageSnapshot.delta_bytes > 0)
        )
        return AnalyticsSummary(
            range=time_range,
            total_delta_bytes=int(total_delta or 0),
            active_keys_count=int(active_keys or 0),
            anomaly_count=len(self._anomalous(time_range, DEFAULT_ANOMALY_THRESHOLD)),
            snapshot_count=int(snapshot_count or 0),
        )
