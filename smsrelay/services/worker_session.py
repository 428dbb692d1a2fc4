from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta

from fastapi import Response
from jose import JWTError

from smsrelay.core.config import settings
from smsrelay.core.security import create_jwt, decode_jwt

SESSION_PURPOSE = "RELAY_REQUEST"


@dataclass
class WorkerSession:
    """The request a worker is currently following.

    One instance per connection, rebuilt from the session cookie on every
    call. Dropping the pointer never touches the request itself.
    """

    request_id: uuid.UUID | None = None

    @property
    def is_active(self) -> bool:
        return self.request_id is not None

    def track(self, request_id: uuid.UUID) -> None:
        self.request_id = request_id

    def reset(self) -> None:
        self.request_id = None

    def to_token(self) -> str:
        if self.request_id is None:
            raise ValueError("no request to encode")
        return create_jwt(
            {"sub": str(self.request_id), "purpose": SESSION_PURPOSE},
            settings.WORKER_JWT_SECRET,
            timedelta(hours=settings.WORKER_SESSION_TTL_HOURS),
        )

    @classmethod
    def from_token(cls, token: str | None) -> "WorkerSession":
        if not token:
            return cls()
        try:
            claims = decode_jwt(token, settings.WORKER_JWT_SECRET)
        except JWTError:
            return cls()
        if str(claims.get("purpose") or "").upper() != SESSION_PURPOSE:
            return cls()
        try:
            return cls(request_id=uuid.UUID(str(claims.get("sub") or "")))
        except ValueError:
            return cls()


def store_worker_session(response: Response, session: WorkerSession) -> None:
    if not session.is_active:
        response.delete_cookie(settings.WORKER_COOKIE_NAME)
        return
    response.set_cookie(
        key=settings.WORKER_COOKIE_NAME,
        value=session.to_token(),
        httponly=True,
        secure=settings.APP_ENV not in {"local", "test"},
        samesite="lax",
        max_age=settings.WORKER_SESSION_TTL_HOURS * 3600,
    )
