"""
Two-Factor Codes — RFC 6238 TOTP (HMAC-SHA1, 30s step, 6 digits) for refunds.

Each staff member's secret is derived from SECRET_KEY and their user id, so no
secret table is needed; `provisioning_secret()` yields the base32 form an
authenticator app is enrolled with.
"""
import base64
import hashlib
import hmac
import time
from typing import Optional

from coursepay.config import get_settings

TIME_STEP = 30
DIGITS = 6


def _user_key(user_id: str) -> bytes:
    settings = get_settings()
    return hmac.new(
        settings.SECRET_KEY.encode("utf-8"), f"2fa:{user_id}".encode("utf-8"), hashlib.sha256
    ).digest()[:20]


def provisioning_secret(user_id: str) -> str:
    return base64.b32encode(_user_key(user_id)).decode("ascii").strip("=")


def _truncate(digest: bytes) -> int:
    offset = digest[-1] & 0x0F
    code = ((digest[offset] & 0x7F) << 24) | (
        (digest[offset + 1] & 0xFF) << 16
    ) | ((digest[offset + 2] & 0xFF) << 8) | (digest[offset + 3] & 0xFF)
    return code % (10 ** DIGITS)


def hotp(key: bytes, counter: int) -> str:
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    return str(_truncate(digest)).zfill(DIGITS)


def current_code(user_id: str, now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    return hotp(_user_key(user_id), int(now // TIME_STEP))


def verify_code(user_id: str, code: Optional[str], window: int = 1, now: Optional[float] = None) -> bool:
    """Accept codes from the current step and +/- `window` neighbours."""
    if not code or not code.isdigit() or len(code) != DIGITS:
        return False
    now = time.time() if now is None else now
    key = _user_key(user_id)
    counter = int(now // TIME_STEP)
    for offset in range(-window, window + 1):
        if counter + offset < 0:
            continue
        if hmac.compare_digest(hotp(key, counter + offset), code):
            return True
    return False
