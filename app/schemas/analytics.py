"""Analytics API schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from app.models.access_key import KeyType
from app.services.analytics_service import Confidence, TimeRange


class ConsumerRead(BaseModel):
    id: UUID
    key_type: KeyType
    name: str
    email: str | None = None
    status: str
    server_name: str | None = None
    country_code: str | None = None
    delta_bytes: int
    total_used_bytes: int
    data_limit_bytes: int | None = None


class AnomalyRead(BaseModel):
    id: UUID
    key_type: KeyType
    name: str
    email: str | None = None
    status: str
    server_name: str | None = None
    recent_delta_bytes: int
    baseline_delta_bytes: int
    ratio: float


class ForecastRead(BaseModel):
    key_id: UUID
    key_type: KeyType
    key_name: str | None = None
    has_quota: bool
    current_usage_bytes: int | None = None
    data_limit_bytes: int | None = None
    usage_percent: int | None = None
    daily_rate_bytes: int | None = None
    days_to_quota: int | None = None
    confidence: Confidence
    message: str


class UsagePointRead(BaseModel):
    used_bytes: int
    delta_bytes: int
    timestamp: datetime


class AnalyticsSummaryRead(BaseModel):
    range: TimeRange
    total_delta_bytes: int
    active_keys_count: int
    anomaly_count: int
    snapshot_count: int
