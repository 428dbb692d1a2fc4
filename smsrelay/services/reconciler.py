"""Local, per-observer copy of a change-fed table.

Every operator session keeps a :class:`LocalView` of the rows it renders and
feeds it the insert/update/delete events of its entity. Request rows carry no
version token, so the view orders competing writes by ``updated_at`` and
refuses to replace a row with an older copy of itself. Views of different
observers may disagree until each receives the next event for a row.
"""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Iterable

from smsrelay.services.change_feed import OP_DELETE, OP_INSERT, OP_UPDATE, ChangeEvent, ChangeFeed, Unsubscribe


def _as_utc_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _is_stale(incoming: dict[str, Any], current: dict[str, Any]) -> bool:
    incoming_at = _as_utc_datetime(incoming.get("updated_at"))
    current_at = _as_utc_datetime(current.get("updated_at"))
    if incoming_at is None or current_at is None:
        return False
    return incoming_at < current_at


class LocalView:
    def __init__(self, entity: str, rows: Iterable[dict[str, Any]] = ()):
        self.entity = entity
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.load(rows)

    def load(self, rows: Iterable[dict[str, Any]]) -> None:
        """Replaces the view with a fresh snapshot."""
        with self._lock:
            self._rows = {}
            for row in rows:
                row_id = str(row.get("id") or "")
                if row_id:
                    self._rows[row_id] = dict(row)

    def on_insert(self, record: dict[str, Any]) -> bool:
        row_id = str(record.get("id") or "")
        if not row_id:
            return False
        with self._lock:
            if row_id in self._rows:
                return False
            self._rows[row_id] = dict(record)
            return True

    def on_update(self, record: dict[str, Any]) -> bool:
        row_id = str(record.get("id") or "")
        if not row_id:
            return False
        with self._lock:
            if row_id not in self._rows:
                self._rows[row_id] = dict(record)
                return True
            return self._replace_locked(row_id, record)

    def on_delete(self, record: dict[str, Any]) -> bool:
        row_id = str(record.get("id") or "")
        with self._lock:
            return self._rows.pop(row_id, None) is not None

    def _replace_locked(self, row_id: str, record: dict[str, Any]) -> bool:
        if _is_stale(record, self._rows[row_id]):
            return False
        self._rows[row_id] = dict(record)
        return True

    def apply(self, event: ChangeEvent) -> bool:
        """Merges one event; returns whether the view changed."""
        if event.entity != self.entity:
            return False
        if event.op == OP_INSERT:
            return self.on_insert(event.record)
        if event.op == OP_UPDATE:
            return self.on_update(event.record)
        if event.op == OP_DELETE:
            return self.on_delete(event.record)
        return False

    def attach(self, feed: ChangeFeed) -> Unsubscribe:
        return feed.subscribe(self.entity, self.on_insert, self.on_update, self.on_delete)

    def get(self, row_id: Any) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(str(row_id))
            return dict(row) if row is not None else None

    def rows(self) -> list[dict[str, Any]]:
        """Rows newest first, as operator lists render them."""
        with self._lock:
            items = [dict(row) for row in self._rows.values()]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        items.sort(key=lambda row: _as_utc_datetime(row.get("created_at")) or epoch, reverse=True)
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)

    def __contains__(self, row_id: object) -> bool:
        with self._lock:
            return str(row_id) in self._rows
