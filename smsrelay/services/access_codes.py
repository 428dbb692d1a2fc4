from __future__ import annotations

import re
import secrets

from smsrelay.core.config import settings
from smsrelay.services.errors import ValidationError

# No 0/O, 1/I/L: codes are read aloud and retyped by hand.
UNAMBIGUOUS_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
SHORT_ID_LENGTH = 8

_ACCESS_CODE_RE = re.compile(r"^[A-Z0-9]{4,32}$")
_SMS_CODE_MAX_LENGTH = 32


def _random_code(length: int) -> str:
    return "".join(secrets.choice(UNAMBIGUOUS_ALPHABET) for _ in range(max(int(length), 1)))


def generate_access_code(length: int | None = None) -> str:
    return _random_code(length or settings.ACCESS_CODE_LENGTH)


def generate_short_id() -> str:
    return _random_code(SHORT_ID_LENGTH)


def normalize_phone(raw: str | None) -> str:
    value = str(raw or "").strip()
    if not value:
        return ""
    digits = "".join(ch for ch in value if ch.isdigit())
    if not digits:
        return ""
    return f"+{digits}" if value.startswith("+") else digits


def normalize_access_code(raw: str | None) -> str:
    return "".join(str(raw or "").split()).upper()


def require_phone_or_400(raw: str | None) -> str:
    phone = normalize_phone(raw)
    digit_count = len(phone.lstrip("+"))
    if digit_count < 6 or digit_count > 20:
        raise ValidationError("Phone number must contain between 6 and 20 digits")
    return phone


def require_access_code_or_400(raw: str | None) -> str:
    code = normalize_access_code(raw)
    if not _ACCESS_CODE_RE.fullmatch(code):
        raise ValidationError("Access code must be 4-32 latin letters or digits")
    return code


def require_sms_code_or_400(raw: str | None) -> str:
    code = str(raw or "").strip()
    if not code:
        raise ValidationError("SMS code must not be empty")
    if len(code) > _SMS_CODE_MAX_LENGTH:
        raise ValidationError(f"SMS code must be at most {_SMS_CODE_MAX_LENGTH} characters")
    return code
