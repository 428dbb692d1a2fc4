from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

import redis

from smsrelay.core.config import settings
from smsrelay.services.errors import RateLimitedError

_LOG = logging.getLogger("smsrelay.rate_limit")

SUBMIT_KEY_PREFIX = "relay:submit:failed"


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after_seconds: int
    current_value: int


class RateLimiter(Protocol):
    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        ...

    def peek(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        ...


class InMemoryRateLimiter:
    """Fixed-window counter for a single process."""

    def __init__(self):
        self._windows: dict[str, tuple[int, datetime]] = {}
        self._lock = Lock()

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        now = datetime.now(timezone.utc)
        window = timedelta(seconds=max(int(window_seconds), 1))
        with self._lock:
            count, window_end = self._windows.get(key, (0, now))
            if window_end <= now:
                count, window_end = 0, now + window
            count += 1
            self._windows[key] = (count, window_end)
        retry_after = max(0, int((window_end - now).total_seconds()))
        return RateLimitResult(allowed=count <= limit, retry_after_seconds=retry_after, current_value=count)

    def peek(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        now = datetime.now(timezone.utc)
        with self._lock:
            count, window_end = self._windows.get(key, (0, now))
        if window_end <= now:
            return RateLimitResult(allowed=True, retry_after_seconds=0, current_value=0)
        retry_after = max(0, int((window_end - now).total_seconds()))
        return RateLimitResult(allowed=count < limit, retry_after_seconds=retry_after, current_value=count)


class RedisRateLimiter:
    """Fixed-window counter shared by every API process through Redis."""

    def __init__(self, client: redis.Redis):
        self.client = client

    def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        window = int(max(window_seconds, 1))
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window, nx=True)
        pipe.ttl(key)
        count, _, ttl = pipe.execute()
        ttl = int(ttl)
        return RateLimitResult(
            allowed=int(count) <= limit,
            retry_after_seconds=ttl if ttl >= 0 else window,
            current_value=int(count),
        )

    def peek(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.ttl(key)
        raw, ttl = pipe.execute()
        count = int(raw or 0)
        return RateLimitResult(
            allowed=count < limit,
            retry_after_seconds=max(int(ttl), 0),
            current_value=count,
        )


_cached_limiter: RateLimiter | None = None


def _build_limiter() -> RateLimiter:
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=0.4,
            socket_connect_timeout=0.4,
        )
        client.ping()
        return RedisRateLimiter(client)
    except redis.RedisError:
        _LOG.warning("Redis limiter unavailable; falling back to in-memory limiter")
        return InMemoryRateLimiter()


def get_rate_limiter() -> RateLimiter:
    global _cached_limiter
    if _cached_limiter is None:
        _cached_limiter = _build_limiter()
    return _cached_limiter


def set_rate_limiter(limiter: RateLimiter | None) -> None:
    global _cached_limiter
    _cached_limiter = limiter


def _hash_key_part(value: str | None) -> str:
    raw = str(value or "").strip()
    if not raw:
        return "-"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


def _submit_key(phone: str) -> str:
    return f"{SUBMIT_KEY_PREFIX}:{_hash_key_part(phone)}"


def _call_limiter(method: str, key: str) -> RateLimitResult:
    kwargs = {
        "limit": int(max(settings.SUBMIT_RATE_LIMIT, 1)),
        "window_seconds": int(settings.SUBMIT_RATE_LIMIT_WINDOW_SECONDS),
    }
    try:
        return getattr(get_rate_limiter(), method)(key, **kwargs)
    except redis.RedisError:
        # Redis went away after startup: keep throttling in this process.
        _LOG.warning("Redis limiter failed; switching to in-memory limiter", exc_info=True)
        fallback = InMemoryRateLimiter()
        set_rate_limiter(fallback)
        return getattr(fallback, method)(key, **kwargs)


def enforce_submit_rate_limit(phone: str) -> None:
    """Rejects a submit once ``phone`` has used up its failed-attempt budget.

    Only looks at the counter; successful submits never consume budget.
    """
    result = _call_limiter("peek", _submit_key(phone))
    if result.allowed:
        return
    _LOG.warning("submit throttled phone_key=%s failures=%s", _hash_key_part(phone), result.current_value)
    raise RateLimitedError(
        "Too many failed submit attempts for this phone number, try again later",
        retry_after_seconds=max(result.retry_after_seconds, 1),
    )


def record_failed_submit(phone: str) -> None:
    """Counts one unknown-phone or wrong-code attempt against ``phone``."""
    _call_limiter("hit", _submit_key(phone))
