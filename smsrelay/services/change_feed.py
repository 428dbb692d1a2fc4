from __future__ import annotations

import itertools
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import redis

from smsrelay.core.config import settings

_LOG = logging.getLogger("smsrelay.change_feed")

ENTITY_REQUESTS = "requests"
ENTITY_CREDENTIALS = "credentials"
ENTITIES = (ENTITY_REQUESTS, ENTITY_CREDENTIALS)

OP_INSERT = "insert"
OP_UPDATE = "update"
OP_DELETE = "delete"
OPERATIONS = (OP_INSERT, OP_UPDATE, OP_DELETE)

RecordCallback = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


def iso_or_none(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat()


@dataclass(frozen=True)
class ChangeEvent:
    entity: str
    op: str
    record: dict[str, Any]
    emitted_at: str = field(default_factory=lambda: iso_or_none(datetime.now(timezone.utc)) or "")

    @property
    def record_id(self) -> str:
        return str(self.record.get("id") or "")

    def as_dict(self) -> dict[str, Any]:
        return {"entity": self.entity, "op": self.op, "record": self.record, "emitted_at": self.emitted_at}

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeEvent":
        payload = json.loads(raw)
        entity = str(payload["entity"])
        op = str(payload["op"])
        if entity not in ENTITIES or op not in OPERATIONS:
            raise ValueError(f"unknown change event {entity}/{op}")
        record = payload.get("record")
        if not isinstance(record, dict):
            raise ValueError("change event without record")
        return cls(entity=entity, op=op, record=record, emitted_at=str(payload.get("emitted_at") or ""))


@dataclass
class _Subscriber:
    entity: str
    on_insert: RecordCallback | None
    on_update: RecordCallback | None
    on_delete: RecordCallback | None

    def callback_for(self, op: str) -> RecordCallback | None:
        if op == OP_INSERT:
            return self.on_insert
        if op == OP_UPDATE:
            return self.on_update
        if op == OP_DELETE:
            return self.on_delete
        return None


class ChangeFeed:
    """In-process fan-out of row changes to subscribed observers."""

    def __init__(self):
        self._subscribers: dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(
        self,
        entity: str,
        on_insert: RecordCallback | None = None,
        on_update: RecordCallback | None = None,
        on_delete: RecordCallback | None = None,
    ) -> Unsubscribe:
        if entity not in ENTITIES:
            raise ValueError(f"unknown entity {entity!r}")
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = _Subscriber(entity, on_insert, on_update, on_delete)

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return _unsubscribe

    def subscriber_count(self, entity: str | None = None) -> int:
        with self._lock:
            return sum(1 for sub in self._subscribers.values() if entity is None or sub.entity == entity)

    def publish(self, event: ChangeEvent) -> None:
        self._deliver(event)

    def _deliver(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [sub for sub in self._subscribers.values() if sub.entity == event.entity]
        for sub in targets:
            callback = sub.callback_for(event.op)
            if callback is None:
                continue
            try:
                callback(dict(event.record))
            except Exception:
                _LOG.exception("change feed subscriber failed entity=%s op=%s id=%s", event.entity, event.op, event.record_id)

    def close(self) -> None:
        with self._lock:
            self._subscribers.clear()


class RedisChangeFeed(ChangeFeed):
    """Relays events through a Redis channel so API processes and workers share one feed."""

    def __init__(self, client: redis.Redis, channel: str):
        super().__init__()
        self.client = client
        self.channel = channel
        self._pubsub = None
        self._listener = None
        self._listener_lock = threading.Lock()

    def subscribe(self, entity, on_insert=None, on_update=None, on_delete=None) -> Unsubscribe:
        unsubscribe = super().subscribe(entity, on_insert, on_update, on_delete)
        self._ensure_listener()
        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        try:
            self.client.publish(self.channel, event.to_json())
        except redis.RedisError:
            _LOG.warning("Redis publish failed; delivering %s/%s locally only", event.entity, event.op)
            self._deliver(event)

    def _ensure_listener(self) -> None:
        with self._listener_lock:
            if self._listener is not None:
                return
            pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(**{self.channel: self._on_message})
            self._pubsub = pubsub
            self._listener = pubsub.run_in_thread(sleep_time=0.2, daemon=True)

    def _on_message(self, message: dict[str, Any]) -> None:
        try:
            event = ChangeEvent.from_json(message.get("data") or "")
        except (ValueError, KeyError, TypeError):
            _LOG.warning("Dropping malformed change event on %s", self.channel)
            return
        self._deliver(event)

    def close(self) -> None:
        with self._listener_lock:
            if self._listener is not None:
                self._listener.stop()
                self._listener = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None
        super().close()


_cached_feed: ChangeFeed | None = None
_feed_lock = threading.Lock()


def _build_feed() -> ChangeFeed:
    if not settings.CHANGE_FEED_REDIS_ENABLED:
        return ChangeFeed()
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=0.4,
            health_check_interval=30,
        )
        client.ping()
        return RedisChangeFeed(client, settings.CHANGE_FEED_CHANNEL)
    except redis.RedisError:
        _LOG.warning("Redis change feed unavailable; falling back to in-process feed")
        return ChangeFeed()


def get_change_feed() -> ChangeFeed:
    global _cached_feed
    if _cached_feed is None:
        with _feed_lock:
            if _cached_feed is None:
                _cached_feed = _build_feed()
    return _cached_feed


def set_change_feed(feed: ChangeFeed | None) -> None:
    global _cached_feed
    with _feed_lock:
        if _cached_feed is not None and _cached_feed is not feed:
            _cached_feed.close()
        _cached_feed = feed


def publish_change(feed: ChangeFeed, entity: str, op: str, record: dict[str, Any]) -> ChangeEvent:
    event = ChangeEvent(entity=entity, op=op, record=record)
    feed.publish(event)
    return event
