"""
Usage Alert Service — quota and expiry warnings derived from the usage ledger.

Exposes the usage percentage and crossed threshold for any key, and on each
cycle sends at most one alert per (key, event) per cooldown window. The
NotificationLog row is written only after a successful delivery, so a failed
send is retried on the next cycle.
"""

from __future__ import annotations

import html
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings as platform_settings
from app.metrics import USAGE_ALERTS_SENT
from app.models.access_key import AccessKey, KeyStatus
from app.models.dynamic_access_key import DynamicAccessKey
from app.models.notification_log import NotificationEvent, NotificationLog
from app.services.snapshot_service import Clock, utcnow
from app.services.usage_ledger import BYTES_PER_GB, MeterableKey, as_utc
from app.services.usage_ledger import usage_percent as ledger_usage_percent

logger = logging.getLogger(__name__)

# Highest threshold first.
USAGE_THRESHOLDS: tuple[tuple[int, NotificationEvent], ...] = (
    (100, NotificationEvent.depleted),
    (90, NotificationEvent.usage_90),
    (80, NotificationEvent.usage_80),
)

_ALERTABLE_STATUSES = (KeyStatus.active, KeyStatus.depleted)


class Notifier(Protocol):
    def send(self, title: str, message: str) -> bool: ...


class TelegramNotifier:
    """Deliver alerts to the configured admin chats through the Telegram Bot API."""

    def __init__(self, bot_token: str | None = None, chat_ids: tuple[str, ...] | None = None):
        self.bot_token = bot_token if bot_token is not None else platform_settings.telegram_bot_token
        self.chat_ids = chat_ids if chat_ids is not None else platform_settings.telegram_admin_chat_ids

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_ids)

    def send(self, title: str, message: str) -> bool:
        if not self.enabled:
            logger.debug("Telegram notifier not configured; dropping alert %r", title)
            return False

        text = f"<b>{html.escape(title)}</b>\n\n{html.escape(message)}"
        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        delivered = False
        for chat_id in self.chat_ids:
            payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
            try:
                resp = httpx.post(url, json=payload, timeout=10.0)
            except httpx.HTTPError:
                logger.exception("Failed to send Telegram alert to chat %s", chat_id)
                continue
            if resp.status_code == 200:
                delivered = True
            else:
                logger.warning("Telegram API returned %d: %s", resp.status_code, resp.text[:500])
        return delivered


@dataclass
class UsageAlertRunResult:
    checked: int = 0
    sent: int = 0
    suppressed: int = 0
    failed: int = 0
    events: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def threshold_for(percent: float | None) -> NotificationEvent | None:
    """The highest usage threshold a percentage has crossed, if any."""
    if percent is None:
        return None
    for threshold, event in USAGE_THRESHOLDS:
        if percent >= threshold:
            return event
    return None


def _gb(value: int) -> str:
    return f"{value / BYTES_PER_GB:.2f} GB"


class UsageAlertService:
    def __init__(self, db: Session, notifier: Notifier | None = None, clock: Clock = utcnow):
        self.db = db
        self.notifier = notifier or TelegramNotifier()
        self.clock = clock

    @staticmethod
    def usage_percent(key: MeterableKey) -> float | None:
        return ledger_usage_percent(key.used_bytes or 0, key.data_limit_bytes)

    @staticmethod
    def threshold_for(percent: float | None) -> NotificationEvent | None:
        return threshold_for(percent)

    def check_all(self) -> UsageAlertRunResult:
        now = self.clock()
        result = UsageAlertRunResult()

        for model in (AccessKey, DynamicAccessKey):
            for key in self._quota_keys(model):
                result.checked += 1
                event = threshold_for(self.usage_percent(key))
                if event is not None:
                    self._alert(key, event, self._usage_message(key, event), now, result)

            for key in self._expiring_keys(model, now):
                days_left = max(0, math.ceil((as_utc(key.expires_at) - now).total_seconds() / 86400))
                message = f"Key {key.name} expires in {days_left} day(s) on {as_utc(key.expires_at):%Y-%m-%d}."
                self._alert(key, NotificationEvent.expiring_soon, message, now, result)

        if result.sent:
            self.db.flush()
        logger.info(
            "Usage alerts: %d keys checked, %d sent, %d suppressed, %d failed",
            result.checked,
            result.sent,
            result.suppressed,
            result.failed,
        )
        return result

    def _alert(
        self,
        key: MeterableKey,
        event: NotificationEvent,
        message: str,
        now: datetime,
        result: UsageAlertRunResult,
    ) -> None:
        if self._recent_notification_exists(key, event, now):
            result.suppressed += 1
            return

        title = f"{event.value.replace('_', ' ').title()}: {key.name}"
        if not self.notifier.send(title, message):
            result.failed += 1
            logger.warning("Alert %s for %s %s was not delivered", event.value, key.key_type.value, key.id)
            return

        self.db.add(
            NotificationLog(
                key_id=key.id,
                key_type=key.key_type,
                event=event,
                message=message,
                sent_at=now,
            )
        )
        result.sent += 1
        result.events.append(f"{key.id}:{event.value}")
        USAGE_ALERTS_SENT.labels(event=event.value).inc()

    def _recent_notification_exists(self, key: MeterableKey, event: NotificationEvent, now: datetime) -> bool:
        cutoff = now - timedelta(hours=platform_settings.notification_cooldown_hours)
        stmt = (
            select(NotificationLog.id)
            .where(
                NotificationLog.key_id == key.id,
                NotificationLog.key_type == key.key_type,
                NotificationLog.event == event,
                NotificationLog.sent_at >= cutoff,
            )
            .limit(1)
        )
        return self.db.scalar(stmt) is not None

    def _usage_message(self, key: MeterableKey, event: NotificationEvent) -> str:
        percent = self.usage_percent(key) or 0.0
        usage = f"{_gb(key.used_bytes or 0)} / {_gb(key.data_limit_bytes or 0)}"
        if event == NotificationEvent.depleted:
            return f"Key {key.name} has reached its data limit ({usage})."
        return f"Key {key.name} has used {percent:.1f}% of its data limit ({usage})."

    def _quota_keys(self, model) -> list:
        stmt = (
            select(model)
            .where(model.status.in_(_ALERTABLE_STATUSES))
            .where(model.data_limit_bytes.is_not(None))
            .where(model.data_limit_bytes > 0)
        )
        return list(self.db.scalars(stmt).all())

    def _expiring_keys(self, model, now: datetime) -> list:
        horizon = now + timedelta(days=platform_settings.expiry_warning_days)
        stmt = (
            select(model)
            .where(model.status == KeyStatus.active)
            .where(model.expires_at.is_not(None))
            .where(model.expires_at >= now)
            .where(model.expires_at <= horizon)
        )
        return list(self.db.scalars(stmt).all())
