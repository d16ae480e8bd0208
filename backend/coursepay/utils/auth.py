"""
Bearer-token Authentication — verifies JWTs issued by the platform's auth service.

This service never issues tokens for end users; it only decodes them with the
shared SECRET_KEY and reads the `id` (or `sub`) and `role` claims.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from coursepay.config import get_settings
from coursepay.utils.errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_FINANCE = "finance"

# Roles allowed to move money back out (refunds) and reconcile the ledger
FINANCE_ROLES = (ROLE_ADMIN, ROLE_FINANCE)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def create_access_token(user_id: str, role: str = ROLE_USER, extra: Optional[dict] = None) -> str:
    """Mint a token the same way the platform does. Used by tooling and tests."""
    settings = get_settings()
    claims = {"id": str(user_id), "role": role, **(extra or {})}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(request: Request) -> CurrentUser:
    """FastAPI dependency: decode the Authorization bearer token."""
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        raise AuthError("Missing token")
    token = auth.split(" ", 1)[1].strip()
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        logger.info("Rejected bearer token from %s", request.client.host if request.client else "-")
        raise AuthError("Invalid token")

    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token")
    return CurrentUser(id=str(user_id), role=str(payload.get("role") or ROLE_USER))


def require_roles(*roles: str):
    """Dependency factory: authenticated user whose role is one of `roles`."""

    def dependency(request: Request) -> CurrentUser:
        user = verify_token(request)
        if user.role not in roles:
            raise ForbiddenError("Insufficient permissions")
        return user

    return dependency


require_admin = require_roles(ROLE_ADMIN)
require_finance = require_roles(*FINANCE_ROLES)
