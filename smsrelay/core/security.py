from datetime import datetime, timedelta, timezone
from jose import jwt

OPERATOR_ROLES = ("OPERATOR", "ADMIN")

def create_jwt(payload: dict, secret: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    data = payload.copy()
    data.update({"iat": int(now.timestamp()), "exp": int((now + expires_delta).timestamp())})
    return jwt.encode(data, secret, algorithm="HS256")

def decode_jwt(token: str, secret: str) -> dict:
    return jwt.decode(token, secret, algorithms=["HS256"])

def create_operator_token(email: str, role: str, secret: str, ttl_minutes: int) -> str:
    normalized_role = str(role or "").strip().upper()
    if normalized_role not in OPERATOR_ROLES:
        raise ValueError(f"role must be one of {', '.join(OPERATOR_ROLES)}")
    subject = str(email or "").strip().lower()
    if not subject:
        raise ValueError("email is required")
    return create_jwt(
        {"sub": subject, "email": subject, "role": normalized_role},
        secret,
        timedelta(minutes=int(ttl_minutes)),
    )
