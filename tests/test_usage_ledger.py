"""Tests for the offset-corrected usage ledger arithmetic."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.models.access_key import DataLimitResetStrategy
from app.services.usage_ledger import (
    BYTES_PER_GB,
    as_utc,
    displayed_usage,
    gb_to_bytes,
    is_depleted,
    is_reset_due,
    read_counter,
    remote_limit_after_reset,
    usage_percent,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _key(used_bytes=0, usage_offset=0):
    return SimpleNamespace(used_bytes=used_bytes, usage_offset=usage_offset)


class TestReadCounter:
    def test_first_reading_is_all_delta(self):
        reading = read_counter(_key(), 1000)
        assert reading.used_bytes == 1000
        assert reading.delta_bytes == 1000
        assert reading.regressed is False

    def test_offset_is_subtracted(self):
        reading = read_counter(_key(used_bytes=200, usage_offset=1000), 1500)
        assert reading.used_bytes == 500
        assert reading.delta_bytes == 300

    def test_regression_clamps_delta_to_zero(self):
        key = _key()
        first = read_counter(key, 1000)
        key.used_bytes = first.used_bytes
        second = read_counter(key, 800)
        assert second.delta_bytes == 0
        assert second.used_bytes == 800
        assert second.regressed is True

    def test_counter_below_offset_clamps_used_to_zero(self):
        reading = read_counter(_key(used_bytes=300, usage_offset=5000), 100)
        assert reading.used_bytes == 0
        assert reading.delta_bytes == 0

    def test_handles_multi_terabyte_counters(self):
        huge = 40 * 1024**4
        reading = read_counter(_key(used_bytes=huge, usage_offset=huge), huge * 2 + 7)
        assert reading.used_bytes == huge + 7
        assert reading.delta_bytes == 7


def test_displayed_usage_never_negative():
    assert displayed_usage(10, 20) == 0
    assert displayed_usage(20, None) == 20


class TestResetDue:
    @pytest.mark.parametrize(
        ("strategy", "elapsed", "expected"),
        [
            (DataLimitResetStrategy.daily, timedelta(hours=23, minutes=59), False),
            (DataLimitResetStrategy.daily, timedelta(days=1), True),
            (DataLimitResetStrategy.weekly, timedelta(days=6, hours=23), False),
            (DataLimitResetStrategy.weekly, timedelta(days=7), True),
            (DataLimitResetStrategy.monthly, timedelta(days=29), False),
            (DataLimitResetStrategy.monthly, timedelta(days=30), True),
        ],
    )
    def test_fixed_day_thresholds(self, strategy, elapsed, expected):
        assert is_reset_due(strategy, NOW - elapsed, NOW) is expected

    def test_never_is_never_due(self):
        assert is_reset_due(DataLimitResetStrategy.never, None, NOW) is False

    def test_missing_last_reset_is_due_immediately(self):
        assert is_reset_due(DataLimitResetStrategy.monthly, None, NOW) is True

    def test_naive_timestamps_are_read_as_utc(self):
        naive = (NOW - timedelta(days=2)).replace(tzinfo=None)
        assert is_reset_due(DataLimitResetStrategy.daily, naive, NOW) is True
        assert as_utc(naive).tzinfo is UTC


def test_remote_limit_after_reset():
    assert remote_limit_after_reset(5000, 2000) == 7000


def test_is_depleted():
    assert is_depleted(2000, 2000) is True
    assert is_depleted(1999, 2000) is False
    assert is_depleted(10**12, None) is False


def test_usage_percent():
    assert usage_percent(850, 1000) == 85
    assert usage_percent(10, None) is None


class TestGbToBytes:
    def test_whole_gigabytes(self):
        assert gb_to_bytes(5) == 5 * BYTES_PER_GB

    def test_fractional_input_is_exact(self):
        assert gb_to_bytes("0.1") == 107374182
        assert gb_to_bytes(Decimal("1.5")) == 1610612736

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            gb_to_bytes("-1")
