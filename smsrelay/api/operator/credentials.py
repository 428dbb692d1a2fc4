from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response

from smsrelay.core.deps import get_credential_store, require_role
from smsrelay.schemas.credentials import CredentialCreate, CredentialList, CredentialPatch, CredentialRead
from smsrelay.services.credential_store import CredentialStore, serialize_credential

router = APIRouter()


@router.get("", response_model=CredentialList)
def list_credentials(
    is_used: bool | None = Query(default=None),
    phone: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    store: CredentialStore = Depends(get_credential_store),
    operator: dict = Depends(require_role("OPERATOR", "ADMIN")),
):
    total, rows = store.list(is_used=is_used, phone=phone, limit=limit, offset=offset)
    return {"rows": [serialize_credential(row) for row in rows], "total": total}


@router.get("/{credential_id}", response_model=CredentialRead)
def get_credential(
    credential_id: str,
    store: CredentialStore = Depends(get_credential_store),
    operator: dict = Depends(require_role("OPERATOR", "ADMIN")),
):
    return serialize_credential(store.get(credential_id))


@router.post("", response_model=CredentialRead, status_code=201)
def create_credential(
    payload: CredentialCreate,
    store: CredentialStore = Depends(get_credential_store),
    admin: dict = Depends(require_role("ADMIN")),
):
    row = store.create(
        payload.phone,
        payload.access_code,
        source_domain=payload.source_domain,
        source_url=payload.source_url,
    )
    return serialize_credential(row)


@router.patch("/{credential_id}", response_model=CredentialRead)
def update_credential(
    credential_id: str,
    payload: CredentialPatch,
    store: CredentialStore = Depends(get_credential_store),
    admin: dict = Depends(require_role("ADMIN")),
):
    changes = payload.model_dump(exclude_unset=True)
    row = store.update(credential_id, **changes)
    return serialize_credential(row)


@router.delete("/{credential_id}", status_code=204)
def delete_credential(
    credential_id: str,
    store: CredentialStore = Depends(get_credential_store),
    admin: dict = Depends(require_role("ADMIN")),
):
    store.delete(credential_id)
    return Response(status_code=204)
