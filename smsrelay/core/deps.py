from fastapi import Cookie, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from smsrelay.core.config import settings
from smsrelay.core.security import OPERATOR_ROLES, decode_jwt
from smsrelay.db.session import get_db
from smsrelay.services.change_feed import ChangeFeed, get_change_feed
from smsrelay.services.credential_store import CredentialStore
from smsrelay.services.request_lifecycle import RequestLifecycleManager
from smsrelay.services.worker_session import WorkerSession

bearer = HTTPBearer(auto_error=False)

def operator_from_token(token: str | None) -> dict | None:
    if not token:
        return None
    try:
        claims = decode_jwt(token, settings.OPERATOR_JWT_SECRET)
    except JWTError:
        return None
    if str(claims.get("role") or "").upper() not in OPERATOR_ROLES:
        return None
    return claims

def get_current_operator(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict:
    if not creds:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    claims = operator_from_token(creds.credentials)
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims

def require_role(*roles: str):
    def _inner(operator: dict = Depends(get_current_operator)) -> dict:
        if str(operator.get("role") or "").upper() not in roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return operator
    return _inner

def operator_actor(operator: dict) -> str:
    return str(operator.get("email") or operator.get("sub") or "").strip() or "operator"

def get_feed() -> ChangeFeed:
    return get_change_feed()

def get_credential_store(db: Session = Depends(get_db), feed: ChangeFeed = Depends(get_feed)) -> CredentialStore:
    return CredentialStore(db, feed)

def get_lifecycle(db: Session = Depends(get_db), feed: ChangeFeed = Depends(get_feed)) -> RequestLifecycleManager:
    return RequestLifecycleManager(db, feed=feed)

def get_worker_session(
    relay_session: str | None = Cookie(default=None, alias=settings.WORKER_COOKIE_NAME),
) -> WorkerSession:
    return WorkerSession.from_token(relay_session)

def require_worker_session(session: WorkerSession = Depends(get_worker_session)) -> WorkerSession:
    if not session.is_active:
        raise HTTPException(status_code=401, detail="No active relay request for this session")
    return session
