import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from smsrelay.db.session import Base
from smsrelay.models.common import UUIDMixin, TimestampMixin

JOB_SCHEDULED = "scheduled"
JOB_DONE = "done"
JOB_SKIPPED = "skipped"
JOB_FAILED = "failed"

class ActivationJob(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "activation_jobs"
    request_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), index=True, nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True, default=JOB_SCHEDULED)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
