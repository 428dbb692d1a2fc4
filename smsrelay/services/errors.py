from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

_LOG = logging.getLogger("smsrelay.store")

KIND_VALIDATION = "VALIDATION"
KIND_CODE_MISMATCH = "CODE_MISMATCH"
KIND_NOT_FOUND = "NOT_FOUND"
KIND_ALREADY_USED = "ALREADY_USED"
KIND_CONFLICT = "CONFLICT"
KIND_INVALID_TRANSITION = "INVALID_TRANSITION"
KIND_RATE_LIMITED = "RATE_LIMITED"
KIND_TRANSIENT = "TRANSIENT"


class RelayError(Exception):
    """Base class for errors reported to callers of relay operations."""

    status_code = 500
    default_kind = "ERROR"

    def __init__(self, message: str, *, kind: str | None = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind

    def as_payload(self) -> dict[str, str]:
        return {"detail": self.message, "code": self.kind}


class ValidationError(RelayError):
    status_code = 400
    default_kind = KIND_VALIDATION


class NotFoundError(RelayError):
    status_code = 404
    default_kind = KIND_NOT_FOUND


class ConflictError(RelayError):
    status_code = 409
    default_kind = KIND_CONFLICT


class RateLimitedError(RelayError):
    status_code = 429
    default_kind = KIND_RATE_LIMITED

    def __init__(self, message: str, *, retry_after_seconds: int = 0):
        super().__init__(message)
        self.retry_after_seconds = int(retry_after_seconds)


class TransientError(RelayError):
    """Store or network failure; the operation may succeed when repeated."""

    status_code = 503
    default_kind = KIND_TRANSIENT


class InvalidTransitionError(ConflictError):
    default_kind = KIND_INVALID_TRANSITION

    def __init__(self, operation: str, current_status: str):
        super().__init__(f'Operation "{operation}" is not allowed in status "{current_status}"')
        self.operation = operation
        self.current_status = current_status


@contextmanager
def store_errors_as_transient(db: Session, operation: str):
    """Rolls back and re-raises store failures as :class:`TransientError`."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        _LOG.warning("store failure during %s: %s", operation, exc.__class__.__name__)
        raise TransientError(f"Storage is temporarily unavailable ({operation})") from exc


def uuid_or_400(raw: object, label: str = "id") -> uuid.UUID:
    if isinstance(raw, uuid.UUID):
        return raw
    try:
        return uuid.UUID(str(raw or "").strip())
    except ValueError as exc:
        raise ValidationError(f'Malformed "{label}"') from exc
