"""Usage snapshots — immutable point-in-time readings of the usage ledger."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.access_key import KeyType


class UsageSnapshot(Base):
    __tablename__ = "usage_snapshots"
    __table_args__ = (
        CheckConstraint("used_bytes >= 0", name="ck_usage_snapshots_used_nonnegative"),
        CheckConstraint("delta_bytes >= 0", name="ck_usage_snapshots_delta_nonnegative"),
        Index("ix_usage_snapshots_key_created", "key_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    key_type: Mapped[KeyType] = mapped_column(Enum(KeyType), nullable=False)
    server_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("servers.server_id"), nullable=True
    )
    used_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delta_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True
    )
