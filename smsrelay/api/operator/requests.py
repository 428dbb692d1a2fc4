from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from smsrelay.core.deps import get_lifecycle, operator_actor, require_role
from smsrelay.schemas.relay import RelayRequestList, RelayRequestRead, SmsCodeSubmit, StatusHistoryRead
from smsrelay.services.request_lifecycle import RequestLifecycleManager, serialize_status_history

router = APIRouter()

operator_only = require_role("OPERATOR", "ADMIN")


@router.get("", response_model=RelayRequestList)
def list_requests(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    total, rows = lifecycle.list(status=status, limit=limit, offset=offset)
    return {"rows": [lifecycle.serialize(row) for row in rows], "total": total}


@router.get("/{request_id}", response_model=RelayRequestRead)
def get_request(
    request_id: str,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    return lifecycle.serialize(lifecycle.get(request_id))


@router.get("/{request_id}/history", response_model=list[StatusHistoryRead])
def get_request_history(
    request_id: str,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    return [serialize_status_history(row) for row in lifecycle.history(request_id)]


@router.post("/{request_id}/activate", response_model=RelayRequestRead)
def activate_request(
    request_id: str,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    return lifecycle.serialize(lifecycle.activate(request_id, actor=operator_actor(operator)))


@router.post("/{request_id}/sms-code", response_model=RelayRequestRead)
def submit_sms_code(
    request_id: str,
    payload: SmsCodeSubmit,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    req = lifecycle.submit_sms_code(request_id, payload.code, actor=operator_actor(operator))
    return lifecycle.serialize(req)


@router.post("/{request_id}/request-sms", response_model=RelayRequestRead)
def request_additional_sms(
    request_id: str,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    req = lifecycle.request_additional_sms(request_id, actor=operator_actor(operator))
    return lifecycle.serialize(req)


@router.post("/{request_id}/complete", response_model=RelayRequestRead)
def complete_request(
    request_id: str,
    lifecycle: RequestLifecycleManager = Depends(get_lifecycle),
    operator: dict = Depends(operator_only),
):
    return lifecycle.serialize(lifecycle.complete(request_id, actor=operator_actor(operator)))
