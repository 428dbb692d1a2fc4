from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from smsrelay.db.session import Base
from smsrelay.models.common import UUIDMixin, TimestampMixin

class Credential(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "phone_numbers"
    phone: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    access_code: Mapped[str] = mapped_column(String(32), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source_domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
