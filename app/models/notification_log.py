"""Notification log — audit of usage alerts already delivered, used for cooldowns."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Index, Integer, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.access_key import KeyType


class NotificationEvent(str, enum.Enum):
    usage_80 = "usage_80"
    usage_90 = "usage_90"
    depleted = "depleted"
    expiring_soon = "expiring_soon"


class NotificationLog(Base):
    __tablename__ = "notification_logs"
    __table_args__ = (Index("ix_notification_logs_key_event_sent", "key_id", "event", "sent_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    key_type: Mapped[KeyType] = mapped_column(Enum(KeyType), nullable=False)
    event: Mapped[NotificationEvent] = mapped_column(Enum(NotificationEvent), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True)
