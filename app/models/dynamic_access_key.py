"""Dynamic access keys — one subscription spread over several server keys."""

import uuid
from typing import ClassVar

from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base
from app.models.access_key import KeyType, MeteredKeyMixin


class DynamicAccessKey(MeteredKeyMixin, Base):
    __tablename__ = "dynamic_access_keys"

    key_type: ClassVar[KeyType] = KeyType.dynamic_key

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    access_keys = relationship("AccessKey", foreign_keys="AccessKey.dynamic_key_id")
