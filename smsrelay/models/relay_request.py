import uuid

from sqlalchemy import ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from smsrelay.db.session import Base
from smsrelay.models.common import UUIDMixin, TimestampMixin

class RelayRequest(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "relay_requests"
    short_id: Mapped[str] = mapped_column(String(16), unique=True, nullable=False, index=True)
    credential_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("phone_numbers.id"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String(40), nullable=False, index=True, default="pending")
    sms_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
