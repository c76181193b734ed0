"""Analytics API — read-only usage rankings, anomalies and quota forecasts."""

from __future__ import annotations

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.models.access_key import KeyType
from app.schemas.analytics import (
    AnalyticsSummaryRead,
    AnomalyRead,
    ConsumerRead,
    ForecastRead,
    UsagePointRead,
)
from app.services.analytics_service import TimeRange

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/top-consumers", response_model=list[ConsumerRead])
def top_consumers(
    range: TimeRange = Query(TimeRange.last_24h),
    limit: int = Query(10, ge=1, le=50),
    key_type: KeyType | None = Query(None),
    db: Session = Depends(get_db),
) -> list[dict]:
    from app.services.analytics_service import AnalyticsService

    svc = AnalyticsService(db)
    return [asdict(c) for c in svc.top_consumers(range, limit=limit, key_type=key_type)]


@router.get("/anomalies", response_model=list[AnomalyRead])
def anomalies(
    range: TimeRange = Query(TimeRange.last_24h),
    threshold: float = Query(3.0, gt=0),
    db: Session = Depends(get_db),
) -> list[dict]:
    from app.services.analytics_service import AnalyticsService

    svc = AnalyticsService(db)
    return [asdict(a) for a in svc.anomalies(range, threshold=threshold)]


@router.get("/forecast/{key_id}", response_model=ForecastRead)
def forecast(
    key_id: UUID,
    key_type: KeyType = Query(KeyType.access_key),
    db: Session = Depends(get_db),
) -> dict:
    from app.services.analytics_service import AnalyticsService

    svc = AnalyticsService(db)
    return asdict(svc.forecast(key_id, key_type))


@router.get("/keys/{key_id}/usage-history", response_model=list[UsagePointRead])
def usage_history(
    key_id: UUID,
    range: TimeRange = Query(TimeRange.last_7d),
    db: Session = Depends(get_db),
) -> list[dict]:
    from app.services.analytics_service import AnalyticsService

    svc = AnalyticsService(db)
    return [asdict(p) for p in svc.usage_history(key_id, range)]


@router.get("/summary", response_model=AnalyticsSummaryRead)
def summary(
    range: TimeRange = Query(TimeRange.last_24h),
    db: Session = Depends(get_db),
) -> dict:
    from app.services.analytics_service import AnalyticsService

    svc = AnalyticsService(db)
    return asdict(svc.summary(range))
