from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from smsrelay.models.common import utcnow
from smsrelay.models.credential import Credential
from smsrelay.models.relay_request import RelayRequest
from smsrelay.models.status_history import StatusHistory
from smsrelay.services.access_codes import generate_short_id, normalize_phone, require_sms_code_or_400
from smsrelay.services.activation import ActivationScheduler
from smsrelay.services.change_feed import (
    ENTITY_CREDENTIALS,
    ENTITY_REQUESTS,
    OP_INSERT,
    OP_UPDATE,
    ChangeFeed,
    get_change_feed,
    iso_or_none,
    publish_change,
)
from smsrelay.services.credential_store import CredentialStore, serialize_credential
from smsrelay.services.errors import (
    KIND_CODE_MISMATCH,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    RelayError,
    ValidationError,
    store_errors_as_transient,
    uuid_or_400,
)
from smsrelay.services.rate_limit import enforce_submit_rate_limit, record_failed_submit

_LOG = logging.getLogger("smsrelay.lifecycle")

STATUS_PENDING = "pending"
STATUS_ACTIVATED = "activated"
STATUS_SMS_REQUESTED = "sms_requested"
STATUS_SMS_SENT = "sms_sent"
STATUS_WAITING_FOR_ADDITIONAL_SMS = "waiting_for_additional_sms"
STATUS_COMPLETED = "completed"
ALL_STATUSES = (
    STATUS_PENDING,
    STATUS_ACTIVATED,
    STATUS_SMS_REQUESTED,
    STATUS_SMS_SENT,
    STATUS_WAITING_FOR_ADDITIONAL_SMS,
    STATUS_COMPLETED,
)

ACTOR_WORKER = "worker"


@dataclass(frozen=True)
class Transition:
    name: str
    sources: frozenset[str]
    target: str


TRANSITIONS: dict[str, Transition] = {
    t.name: t
    for t in (
        Transition("activate", frozenset({STATUS_PENDING}), STATUS_ACTIVATED),
        Transition("mark_sms_sent", frozenset({STATUS_ACTIVATED}), STATUS_SMS_SENT),
        Transition(
            "request_additional_sms",
            frozenset({STATUS_WAITING_FOR_ADDITIONAL_SMS, STATUS_SMS_SENT}),
            STATUS_SMS_REQUESTED,
        ),
        # Operators may always push a fresh code, including into a completed request.
        Transition(
            "submit_sms_code",
            frozenset(
                {
                    STATUS_ACTIVATED,
                    STATUS_SMS_SENT,
                    STATUS_SMS_REQUESTED,
                    STATUS_WAITING_FOR_ADDITIONAL_SMS,
                    STATUS_COMPLETED,
                }
            ),
            STATUS_WAITING_FOR_ADDITIONAL_SMS,
        ),
        Transition("complete", frozenset({STATUS_WAITING_FOR_ADDITIONAL_SMS}), STATUS_COMPLETED),
    )
}


def allowed_operations(status: str) -> list[str]:
    return sorted(name for name, t in TRANSITIONS.items() if status in t.sources)


def _as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _next_updated_at(previous: datetime | None) -> datetime:
    now = utcnow()
    previous_utc = _as_utc(previous)
    if previous_utc is not None and now <= previous_utc:
        return previous_utc + timedelta(microseconds=1)
    return now


def serialize_request(row: RelayRequest, credential: Credential | None = None) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "short_id": row.short_id,
        "credential_id": str(row.credential_id),
        "phone": credential.phone if credential is not None else None,
        "status": row.status,
        "sms_code": row.sms_code,
        "allowed_operations": allowed_operations(row.status),
        "created_at": iso_or_none(row.created_at),
        "updated_at": iso_or_none(row.updated_at),
    }


def serialize_status_history(row: StatusHistory) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "request_id": str(row.request_id),
        "from_status": row.from_status,
        "to_status": row.to_status,
        "actor": row.actor,
        "comment": row.comment,
        "created_at": iso_or_none(row.created_at),
    }


class RequestLifecycleManager:
    """Owns relay requests and the transitions between their statuses.

    Every transition is a single conditional UPDATE keyed on the status the
    caller observed, so a rejected or lost transition leaves the row
    untouched. Nothing here retries; callers decide.
    """

    def __init__(
        self,
        db: Session,
        *,
        feed: ChangeFeed | None = None,
        credentials: CredentialStore | None = None,
        scheduler: ActivationScheduler | None = None,
    ):
        self.db = db
        self.feed = feed if feed is not None else get_change_feed()
        self.credentials = credentials if credentials is not None else CredentialStore(db, self.feed)
        self.scheduler = scheduler if scheduler is not None else ActivationScheduler(db)

    # reads

    def get(self, request_id: uuid.UUID | str) -> RelayRequest:
        row = self.db.get(RelayRequest, uuid_or_400(request_id, "request_id"))
        if row is None:
            raise NotFoundError("Request not found")
        return row

    def list(self, *, status: str | None = None, limit: int = 50, offset: int = 0) -> tuple[int, list[RelayRequest]]:
        query = self.db.query(RelayRequest)
        status_filter = str(status or "").strip().lower()
        if status_filter:
            if status_filter not in ALL_STATUSES:
                raise ValidationError(f'Unknown status "{status_filter}"')
            query = query.filter(RelayRequest.status == status_filter)
        total = query.count()
        rows = (
            query.order_by(RelayRequest.created_at.desc(), RelayRequest.id)
            .offset(max(int(offset), 0))
            .limit(max(min(int(limit), 500), 1))
            .all()
        )
        return total, rows

    def history(self, request_id: uuid.UUID | str) -> list[StatusHistory]:
        row = self.get(request_id)
        return (
            self.db.query(StatusHistory)
            .filter(StatusHistory.request_id == row.id)
            .order_by(StatusHistory.created_at.asc(), StatusHistory.id)
            .all()
        )

    def serialize(self, row: RelayRequest) -> dict[str, Any]:
        return serialize_request(row, self.db.get(Credential, row.credential_id))

    # operations

    def submit(self, phone: str, access_code: str) -> RelayRequest:
        normalized_phone = normalize_phone(phone)
        if not normalized_phone:
            raise ValidationError("Phone number is required")
        enforce_submit_rate_limit(normalized_phone)

        try:
            credential = self.credentials.validate(normalized_phone, access_code)
        except (NotFoundError, ValidationError) as exc:
            if isinstance(exc, NotFoundError) or exc.kind == KIND_CODE_MISMATCH:
                record_failed_submit(normalized_phone)
            raise
        now = utcnow()
        try:
            with store_errors_as_transient(self.db, "submit"):
                leased = self.credentials.lease(credential.id, commit=False)
                req = RelayRequest(
                    short_id=self._unused_short_id(),
                    credential_id=leased.id,
                    status=STATUS_PENDING,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(req)
                self.db.flush()
                self.db.add(StatusHistory(request_id=req.id, from_status=None, to_status=STATUS_PENDING, actor=ACTOR_WORKER))
                self.scheduler.schedule(req)
                self.db.commit()
                self.db.refresh(req)
                self.db.refresh(leased)
        except RelayError:
            self.db.rollback()
            raise

        _LOG.info("request %s submitted short_id=%s credential=%s", req.id, req.short_id, leased.id)
        publish_change(self.feed, ENTITY_CREDENTIALS, OP_UPDATE, serialize_credential(leased))
        publish_change(self.feed, ENTITY_REQUESTS, OP_INSERT, serialize_request(req, leased))
        return req

    def activate(self, request_id: uuid.UUID | str, *, actor: str) -> RelayRequest:
        try:
            return self._transition("activate", request_id, actor=actor)
        except InvalidTransitionError as exc:
            if exc.current_status == STATUS_ACTIVATED:
                return self.get(request_id)
            raise
        except ConflictError:
            # Lost the race to another activation; the outcome is the same.
            current = self.db.get(RelayRequest, uuid_or_400(request_id, "request_id"), populate_existing=True)
            if current is not None and current.status == STATUS_ACTIVATED:
                return current
            raise

    def activate_if_pending(self, request_id: uuid.UUID | str, *, actor: str) -> bool:
        """Guarded activation for the scheduler: False when the request already moved on."""
        try:
            self._transition("activate", request_id, actor=actor)
        except ConflictError:
            # InvalidTransitionError included: already activated or further along.
            return False
        return True

    def mark_sms_sent(self, request_id: uuid.UUID | str, *, actor: str = ACTOR_WORKER) -> RelayRequest:
        return self._transition("mark_sms_sent", request_id, actor=actor)

    def request_additional_sms(self, request_id: uuid.UUID | str, *, actor: str = ACTOR_WORKER) -> RelayRequest:
        return self._transition("request_additional_sms", request_id, actor=actor)

    def submit_sms_code(self, request_id: uuid.UUID | str, code: str, *, actor: str) -> RelayRequest:
        sms_code = require_sms_code_or_400(code)
        return self._transition("submit_sms_code", request_id, actor=actor, values={"sms_code": sms_code})

    def complete(self, request_id: uuid.UUID | str, *, actor: str) -> RelayRequest:
        return self._transition("complete", request_id, actor=actor)

    # internals

    def _unused_short_id(self) -> str:
        for _ in range(8):
            candidate = generate_short_id()
            taken = self.db.query(RelayRequest.id).filter(RelayRequest.short_id == candidate).first()
            if taken is None:
                return candidate
        raise ConflictError("Could not allocate a short id, try again")

    def _transition(
        self,
        name: str,
        request_id: uuid.UUID | str,
        *,
        actor: str,
        values: dict[str, Any] | None = None,
        comment: str | None = None,
    ) -> RelayRequest:
        transition = TRANSITIONS[name]
        request_uuid = uuid_or_400(request_id, "request_id")
        actor_label = str(actor or "").strip()[:200] or "unknown"

        with store_errors_as_transient(self.db, name):
            row = self.db.get(RelayRequest, request_uuid, populate_existing=True)
            if row is None:
                self.db.rollback()
                raise NotFoundError("Request not found")
            from_status = row.status
            if from_status not in transition.sources:
                self.db.rollback()
                raise InvalidTransitionError(name, from_status)

            changes = {"status": transition.target, "updated_at": _next_updated_at(row.updated_at), **(values or {})}
            result = self.db.execute(
                update(RelayRequest)
                .where(RelayRequest.id == request_uuid, RelayRequest.status == from_status)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                _LOG.info("transition %s lost race on request %s", name, request_uuid)
                raise ConflictError("Request was changed concurrently; reload it and retry")
            self.db.add(
                StatusHistory(
                    request_id=request_uuid,
                    from_status=from_status,
                    to_status=transition.target,
                    actor=actor_label,
                    comment=comment,
                )
            )
            self.db.commit()
            row = self.db.get(RelayRequest, request_uuid, populate_existing=True)
            credential = self.db.get(Credential, row.credential_id)

        _LOG.info("request %s %s: %s -> %s by %s", request_uuid, name, from_status, transition.target, actor_label)
        publish_change(self.feed, ENTITY_REQUESTS, OP_UPDATE, serialize_request(row, credential))
        return row
