from __future__ import annotations

from fastapi import APIRouter, Query, WebSocket

from smsrelay.api.streaming import stream_changes
from smsrelay.core.deps import operator_from_token
from smsrelay.services.change_feed import ENTITIES, get_change_feed

router = APIRouter()


def _entities_or_default(raw: str | None) -> list[str]:
    requested = [item.strip().lower() for item in str(raw or "").split(",") if item.strip()]
    selected = [entity for entity in ENTITIES if entity in requested]
    return selected or list(ENTITIES)


@router.websocket("/ws")
async def operator_feed(
    websocket: WebSocket,
    token: str | None = Query(default=None),
    entities: str | None = Query(default=None),
):
    if operator_from_token(token) is None:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    await stream_changes(websocket, get_change_feed(), _entities_or_default(entities))
