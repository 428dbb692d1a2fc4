from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

from fastapi import WebSocket, WebSocketDisconnect

from smsrelay.services.change_feed import OP_DELETE, OP_INSERT, OP_UPDATE, ChangeEvent, ChangeFeed

_LOG = logging.getLogger("smsrelay.change_feed")

QUEUE_LIMIT = 1000
# Clients reconnect and reload their snapshot on 1013.
CLOSE_TRY_AGAIN_LATER = 1013

RecordFilter = Callable[[str, dict[str, Any]], bool]


async def stream_changes(
    websocket: WebSocket,
    feed: ChangeFeed,
    entities: Iterable[str],
    record_filter: RecordFilter | None = None,
) -> None:
    """Forwards feed events to an accepted websocket until either side goes away."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=QUEUE_LIMIT)
    overflowed = asyncio.Event()
    entity_list = list(entities)

    def _put(event: ChangeEvent) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            overflowed.set()

    def _callback(entity: str, op: str):
        def _on_record(record: dict[str, Any]) -> None:
            if record_filter is not None and not record_filter(entity, record):
                return
            try:
                loop.call_soon_threadsafe(_put, ChangeEvent(entity=entity, op=op, record=record))
            except RuntimeError:
                # Loop already closed: the socket is gone.
                pass

        return _on_record

    unsubscribers = [
        feed.subscribe(
            entity,
            _callback(entity, OP_INSERT),
            _callback(entity, OP_UPDATE),
            _callback(entity, OP_DELETE),
        )
        for entity in entity_list
    ]

    async def _send() -> None:
        await websocket.send_json({"type": "subscribed", "entities": entity_list})
        while True:
            get_event = asyncio.ensure_future(queue.get())
            wait_overflow = asyncio.ensure_future(overflowed.wait())
            done, pending = await asyncio.wait({get_event, wait_overflow}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if get_event in done:
                await websocket.send_json({"type": "change", **get_event.result().as_dict()})
            if overflowed.is_set():
                _LOG.warning("change stream overflow; closing socket so the client reloads")
                await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
                return

    async def _receive() -> None:
        # Clients only ever send pings; reading detects the disconnect.
        while True:
            await websocket.receive_text()

    tasks = [asyncio.ensure_future(_send()), asyncio.ensure_future(_receive())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
