"""
CSRF Guard — Double-submit cookie protection for browser-initiated mutations.

The server sets a random secret in an httpOnly, SameSite=Strict cookie and hands
the client a token derived from it. A mutating call must echo the token in the
X-CSRF-Token header; a cross-site page can neither read the cookie nor forge a
matching token.

Token format: <issued_at>-<salt>-<hmac(secret_key:secret, issued_at.salt)>
"""
import secrets
import time
from typing import Callable, Optional

from fastapi import Request, Response

from coursepay.config import get_settings
from coursepay.utils.authenticity import RequestAuthenticity
from coursepay.utils.hashing import hmac_sha256, constant_time_equals


class CsrfGuard(RequestAuthenticity):

    def __init__(self, clock: Callable[[], float] = time.time):
        self.settings = get_settings()
        self.clock = clock

    # ─── Token mechanics ─────────────────────────────────────────────

    def _sign(self, secret: str, issued_at: int, salt: str) -> str:
        return hmac_sha256(f"{self.settings.SECRET_KEY}:{secret}", f"{issued_at}.{salt}")

    def make_token(self, secret: str) -> str:
        issued_at = int(self.clock())
        salt = secrets.token_hex(8)
        return f"{issued_at}-{salt}-{self._sign(secret, issued_at, salt)}"

    def check_token(self, secret: Optional[str], token: Optional[str]) -> bool:
        if not secret or not token:
            return False
        parts = token.split("-")
        if len(parts) != 3 or not parts[0].isdigit():
            return False
        issued_at, salt, signature = int(parts[0]), parts[1], parts[2]
        age = self.clock() - issued_at
        if age < 0 or age > self.settings.CSRF_TOKEN_TTL_SECONDS:
            return False
        return constant_time_equals(signature, self._sign(secret, issued_at, salt))

    # ─── Request-level API ───────────────────────────────────────────

    def issue_token(self, request: Request, response: Response) -> str:
        """Return a fresh token, (re)setting the secret cookie when absent."""
        secret = request.cookies.get(self.settings.CSRF_COOKIE_NAME)
        if not secret or len(secret) < 16:
            secret = secrets.token_urlsafe(24)
        response.set_cookie(
            key=self.settings.CSRF_COOKIE_NAME,
            value=secret,
            max_age=self.settings.CSRF_TOKEN_TTL_SECONDS,
            httponly=True,
            secure=not self.settings.DEBUG,
            samesite="strict",
            path="/",
        )
        return self.make_token(secret)

    def verify(self, request: Request, body: bytes = b"") -> bool:
        secret = request.cookies.get(self.settings.CSRF_COOKIE_NAME)
        token = request.headers.get(self.settings.CSRF_HEADER_NAME)
        return self.check_token(secret, token)


_guard: Optional[CsrfGuard] = None


def get_csrf_guard() -> CsrfGuard:
    global _guard
    if _guard is None:
        _guard = CsrfGuard()
    return _guard
