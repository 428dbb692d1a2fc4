from __future__ import annotations

from fastapi import APIRouter, Depends, Response, WebSocket

from smsrelay.api.streaming import stream_changes
from smsrelay.core.config import settings
from smsrelay.core.deps import get_lifecycle, get_worker_session, require_worker_session
from smsrelay.schemas.relay import RelayRequestRead, RelaySubmit, WorkerSessionRead
from smsrelay.services.change_feed import ENTITY_REQUESTS, get_change_feed
from smsrelay.services.errors import NotFoundError
from smsrelay.services.request_lifecycle import ACTOR_WORKER, RequestLifecycleManager
from smsrelay.services.worker_session import WorkerSession, store_worker_session

router = APIRouter()


@router.post("/submit", response_model=RelayRequestRead, status_code=201)
def submit_request(
    payload: RelaySubmit,
    response: Response,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    session: WorkerSession = Depends(get_worker_session),
):
    req = lifecycle.submit(payload.phone, payload.access_code)
    session.track(req.id)
    store_worker_session(response, session)
    return lifecycle.serialize(req)


@router.get("/current", response_model=WorkerSessionRead)
def current_request(
    response: Response,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    session: WorkerSession = Depends(get_worker_session),
):
    if not session.is_active:
        return {"active": False, "request": None}
    try:
        req = lifecycle.get(session.request_id)
    except NotFoundError:
        session.reset()
        store_worker_session(response, session)
        return {"active": False, "request": None}
    return {"active": True, "request": lifecycle.serialize(req)}


@router.post("/current/sms-sent", response_model=RelayRequestRead)
def mark_sms_sent(
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    session: WorkerSession = Depends(require_worker_session),
):
    req = lifecycle.mark_sms_sent(session.request_id, actor=ACTOR_WORKER)
    return lifecycle.serialize(req)


@router.post("/current/request-sms", response_model=RelayRequestRead)
def request_additional_sms(
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    session: WorkerSession = Depends(require_worker_session),
):
    req = lifecycle.request_additional_sms(session.request_id, actor=ACTOR_WORKER)
    return lifecycle.serialize(req)


@router.post("/reset", response_model=WorkerSessionRead)
def reset_session(response: Response, session: WorkerSession = Depends(get_worker_session)):
    session.reset()
    store_worker_session(response, session)
    return {"active": False, "request": None}


@router.websocket("/current/ws")
async def current_request_feed(websocket: WebSocket):
    session = WorkerSession.from_token(websocket.cookies.get(settings.WORKER_COOKIE_NAME))
    if not session.is_active:
        await websocket.close(code=4401)
        return
    await websocket.accept()
    request_key = str(session.request_id)
    await stream_changes(
        websocket,
        get_change_feed(),
        [ENTITY_REQUESTS],
        record_filter=lambda _entity, record: str(record.get("id") or "") == request_key,
    )
