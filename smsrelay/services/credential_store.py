from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from smsrelay.models.common import utcnow
from smsrelay.models.credential import Credential
from smsrelay.models.relay_request import RelayRequest
from smsrelay.services.access_codes import (
    generate_access_code,
    normalize_access_code,
    normalize_phone,
    require_access_code_or_400,
    require_phone_or_400,
)
from smsrelay.services.change_feed import (
    ENTITY_CREDENTIALS,
    OP_DELETE,
    OP_INSERT,
    OP_UPDATE,
    ChangeFeed,
    get_change_feed,
    iso_or_none,
    publish_change,
)
from smsrelay.services.errors import (
    KIND_ALREADY_USED,
    KIND_CODE_MISMATCH,
    ConflictError,
    NotFoundError,
    ValidationError,
    store_errors_as_transient,
    uuid_or_400,
)

_LOG = logging.getLogger("smsrelay.credentials")

_UNSET: Any = object()


def serialize_credential(row: Credential) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "phone": row.phone,
        "access_code": row.access_code,
        "is_used": bool(row.is_used),
        "used_at": iso_or_none(row.used_at),
        "source_domain": row.source_domain,
        "source_url": row.source_url,
        "created_at": iso_or_none(row.created_at),
        "updated_at": iso_or_none(row.updated_at),
    }


def _optional_text(raw: str | None, limit: int) -> str | None:
    value = str(raw or "").strip()
    return value[:limit] or None


class CredentialStore:
    """Pool of phone + access code lease records.

    ``is_used`` is only ever written by :meth:`lease`, as a conditional update
    that succeeds for exactly one caller per credential.
    """

    def __init__(self, db: Session, feed: ChangeFeed | None = None):
        self.db = db
        self.feed = feed if feed is not None else get_change_feed()

    def get(self, credential_id: uuid.UUID | str) -> Credential:
        row = self.db.get(Credential, uuid_or_400(credential_id, "credential_id"))
        if row is None:
            raise NotFoundError("Credential not found")
        return row

    def list(
        self,
        *,
        is_used: bool | None = None,
        phone: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[Credential]]:
        query = self.db.query(Credential)
        if is_used is not None:
            query = query.filter(Credential.is_used.is_(bool(is_used)))
        phone_filter = normalize_phone(phone)
        if phone_filter:
            query = query.filter(Credential.phone == phone_filter)
        total = query.count()
        rows = (
            query.order_by(Credential.created_at.desc(), Credential.id)
            .offset(max(int(offset), 0))
            .limit(max(min(int(limit), 500), 1))
            .all()
        )
        return total, rows

    def create(
        self,
        phone: str,
        access_code: str | None = None,
        *,
        source_domain: str | None = None,
        source_url: str | None = None,
    ) -> Credential:
        normalized_phone = require_phone_or_400(phone)
        code = require_access_code_or_400(access_code) if str(access_code or "").strip() else generate_access_code()
        row = Credential(
            phone=normalized_phone,
            access_code=code,
            is_used=False,
            source_domain=_optional_text(source_domain, 255),
            source_url=_optional_text(source_url, 1000),
        )
        with store_errors_as_transient(self.db, "credential create"):
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        _LOG.info("credential created id=%s phone=%s", row.id, row.phone)
        publish_change(self.feed, ENTITY_CREDENTIALS, OP_INSERT, serialize_credential(row))
        return row

    def update(
        self,
        credential_id: uuid.UUID | str,
        *,
        phone: str | None = None,
        access_code: str | None = None,
        source_domain: str | None = _UNSET,
        source_url: str | None = _UNSET,
    ) -> Credential:
        row = self.get(credential_id)
        changed = False
        if phone is not None:
            normalized_phone = require_phone_or_400(phone)
            if normalized_phone != row.phone:
                row.phone = normalized_phone
                changed = True
        if access_code is not None:
            code = require_access_code_or_400(access_code)
            if code != row.access_code:
                row.access_code = code
                changed = True
        if source_domain is not _UNSET:
            value = _optional_text(source_domain, 255)
            if value != row.source_domain:
                row.source_domain = value
                changed = True
        if source_url is not _UNSET:
            value = _optional_text(source_url, 1000)
            if value != row.source_url:
                row.source_url = value
                changed = True
        if not changed:
            return row

        row.updated_at = utcnow()
        with store_errors_as_transient(self.db, "credential update"):
            self.db.add(row)
            self.db.commit()
            self.db.refresh(row)
        publish_change(self.feed, ENTITY_CREDENTIALS, OP_UPDATE, serialize_credential(row))
        return row

    def delete(self, credential_id: uuid.UUID | str) -> None:
        row = self.get(credential_id)
        referenced = self.db.query(RelayRequest.id).filter(RelayRequest.credential_id == row.id).first()
        if referenced is not None:
            raise ConflictError("Credential has requests and cannot be deleted")
        snapshot = serialize_credential(row)
        with store_errors_as_transient(self.db, "credential delete"):
            self.db.delete(row)
            self.db.commit()
        _LOG.info("credential deleted id=%s", snapshot["id"])
        publish_change(self.feed, ENTITY_CREDENTIALS, OP_DELETE, snapshot)

    def validate(self, phone: str, access_code: str) -> Credential:
        normalized_phone = normalize_phone(phone)
        code = normalize_access_code(access_code)
        if not normalized_phone or not code:
            raise ValidationError("Phone number and access code are required")

        with store_errors_as_transient(self.db, "credential lookup"):
            rows = (
                self.db.query(Credential)
                .filter(Credential.phone == normalized_phone)
                .order_by(Credential.created_at.asc(), Credential.id)
                .all()
            )
        if not rows:
            raise NotFoundError("Phone number is not registered")

        matching = [row for row in rows if row.access_code == code]
        if not matching:
            raise ValidationError("Access code does not match this phone number", kind=KIND_CODE_MISMATCH)
        for row in matching:
            if not row.is_used:
                return row
        raise ConflictError("Phone number is already in use", kind=KIND_ALREADY_USED)

    def lease(self, credential_id: uuid.UUID | str, *, commit: bool = True) -> Credential:
        """Marks the credential used if, and only if, it is still free.

        With ``commit=False`` the update joins the caller's transaction and
        the caller is responsible for committing and publishing.
        """
        credential_uuid = uuid_or_400(credential_id, "credential_id")
        now = utcnow()
        with store_errors_as_transient(self.db, "credential lease"):
            result = self.db.execute(
                update(Credential)
                .where(Credential.id == credential_uuid, Credential.is_used.is_(False))
                .values(is_used=True, used_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = self.db.query(Credential.id).filter(Credential.id == credential_uuid).first()
                if commit:
                    self.db.rollback()
                if exists is None:
                    raise NotFoundError("Credential not found")
                _LOG.info("lease conflict credential=%s", credential_uuid)
                raise ConflictError("Credential was leased by a concurrent request")
            row = self.db.get(Credential, credential_uuid, populate_existing=True)
            if commit:
                self.db.commit()
                self.db.refresh(row)
        if commit:
            publish_change(self.feed, ENTITY_CREDENTIALS, OP_UPDATE, serialize_credential(row))
        return row
