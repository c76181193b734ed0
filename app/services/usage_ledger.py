"""
Usage Ledger — offset-corrected accounting for remote transfer counters.

Remote servers only ever report a cumulative counter that cannot be reset
from here. Displayed usage is derived locally:

    used_bytes = max(0, remote_cumulative - usage_offset)

A quota reset moves the offset up to the current remote cumulative, and the
remote enforcement ceiling becomes ``remote_cumulative + data_limit_bytes``.
All arithmetic is on Python ints; nothing here touches floats except the
percentage helpers used for display.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Protocol
from uuid import UUID

from app.models.access_key import DataLimitResetStrategy, KeyStatus, KeyType

BYTES_PER_GB = 1024**3

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Fixed day counts, not calendar boundaries.
RESET_INTERVAL_DAYS: dict[DataLimitResetStrategy, float] = {
    DataLimitResetStrategy.daily: 1.0,
    DataLimitResetStrategy.weekly: 7.0,
    DataLimitResetStrategy.monthly: 30.0,
}


class MeterableKey(Protocol):
    key_type: KeyType
    id: UUID
    name: str
    used_bytes: int
    usage_offset: int
    data_limit_bytes: int | None
    data_limit_reset_strategy: DataLimitResetStrategy
    last_data_limit_reset: datetime | None
    status: KeyStatus


@dataclass(frozen=True)
class LedgerReading:
    used_bytes: int
    delta_bytes: int
    regressed: bool


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def displayed_usage(remote_cumulative: int, usage_offset: int) -> int:
    return max(0, int(remote_cumulative) - int(usage_offset or 0))


def read_counter(key: MeterableKey, remote_cumulative: int) -> LedgerReading:
    """Derive the next ledger values for a key from a fresh remote reading."""
    previous = int(key.used_bytes or 0)
    used = displayed_usage(remote_cumulative, key.usage_offset)
    delta = used - previous
    return LedgerReading(used_bytes=used, delta_bytes=max(0, delta), regressed=delta < 0)


def elapsed_days(last_reset: datetime | None, now: datetime) -> float:
    start = as_utc(last_reset) or EPOCH
    return (as_utc(now) - start).total_seconds() / 86400


def is_reset_due(strategy: DataLimitResetStrategy | None, last_reset: datetime | None, now: datetime) -> bool:
    if strategy is None or strategy == DataLimitResetStrategy.never:
        return False
    threshold = RESET_INTERVAL_DAYS.get(strategy)
    if threshold is None:
        return False
    return elapsed_days(last_reset, now) >= threshold


def remote_limit_after_reset(remote_cumulative: int, data_limit_bytes: int) -> int:
    return int(remote_cumulative) + int(data_limit_bytes)


def is_depleted(used_bytes: int, data_limit_bytes: int | None) -> bool:
    return bool(data_limit_bytes) and int(used_bytes) >= int(data_limit_bytes)


def usage_percent(used_bytes: int, data_limit_bytes: int | None) -> float | None:
    if not data_limit_bytes:
        return None
    return int(used_bytes) * 100 / int(data_limit_bytes)


def gb_to_bytes(value: Decimal | str | int | float) -> int:
    """Convert a (possibly fractional) GB figure from configuration to whole bytes."""
    gb = Decimal(str(value))
    if gb < 0:
        raise ValueError("Data limit cannot be negative")
    return int((gb * BYTES_PER_GB).to_integral_value(rounding=ROUND_FLOOR))


def unchanged_since_read(key: MeterableKey) -> list:
    """WHERE criteria that match the key's row only while no reset has landed since it was loaded."""
    model = type(key)
    observed = key.last_data_limit_reset
    if observed is None:
        reset_clause = model.last_data_limit_reset.is_(None)
    else:
        reset_clause = model.last_data_limit_reset == observed
    return [model.id == key.id, model.usage_offset == int(key.usage_offset or 0), reset_clause]
