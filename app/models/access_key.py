"""Access keys and the metered columns shared by every key kind."""

import enum
import uuid
from datetime import UTC, datetime
from typing import ClassVar

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class KeyType(str, enum.Enum):
    access_key = "access_key"
    dynamic_key = "dynamic_key"


class KeyStatus(str, enum.Enum):
    active = "active"
    disabled = "disabled"
    expired = "expired"
    depleted = "depleted"
    pending = "pending"


class DataLimitResetStrategy(str, enum.Enum):
    never = "never"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


# Keys in these states cannot pass traffic and are not metered.
UNMETERED_STATUSES = (KeyStatus.disabled, KeyStatus.expired)


class MeteredKeyMixin:
    key_type: ClassVar[KeyType]

    name: Mapped[str] = mapped_column(String(160), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255))
    used_bytes: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    usage_offset: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    data_limit_bytes: Mapped[int | None] = mapped_column(BigInteger)
    data_limit_reset_strategy: Mapped[DataLimitResetStrategy] = mapped_column(
        Enum(DataLimitResetStrategy), default=DataLimitResetStrategy.never, nullable=False
    )
    last_data_limit_reset: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[KeyStatus] = mapped_column(Enum(KeyStatus), default=KeyStatus.active, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class AccessKey(MeteredKeyMixin, Base):
    __tablename__ = "access_keys"
    __table_args__ = (UniqueConstraint("server_id", "outline_key_id", name="uq_access_keys_server_outline_key"),)

    key_type: ClassVar[KeyType] = KeyType.access_key

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    server_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("servers.server_id"), nullable=False, index=True
    )
    outline_key_id: Mapped[str] = mapped_column(String(64), nullable=False)
    dynamic_key_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("dynamic_access_keys.id"), nullable=True, index=True
    )

    server = relationship("Server")
