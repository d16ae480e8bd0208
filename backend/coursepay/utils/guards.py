"""
Route Guards — Ordered FastAPI dependencies protecting the money-moving endpoints.

A route declares its guards in the order they must run:
    user = Depends(rate_limit("refund", auth=require_finance))   # auth, then throttle
    _ = Depends(csrf_protect)                                     # then CSRF
and validates its body/query inside the handler with `validated(...)`.
Each guard either passes or raises a PaymentServiceError.
"""
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from coursepay.database import get_db
from coursepay.services.audit_service import AuditService
from coursepay.services.config_service import ConfigService
from coursepay.services.gateway_service import GatewayClient
from coursepay.utils.auth import CurrentUser, verify_token
from coursepay.utils.csrf import get_csrf_guard
from coursepay.utils.errors import CsrfFailure, RateLimitExceeded, ValidationFailed
from coursepay.utils.rate_limiter import RECONCILIATION_GLOBAL_KEY, enforce
from coursepay.utils.validators import ValidationResult

KeyFunc = Callable[[Request, CurrentUser], str]


def by_user(request: Request, user: CurrentUser) -> str:
    return f"user:{user.id}"


def by_transaction(request: Request, user: CurrentUser) -> str:
    return f"txn:{request.path_params.get('transaction_id', '')}"


def by_global_reconciliation(request: Request, user: CurrentUser) -> str:
    return RECONCILIATION_GLOBAL_KEY


def rate_limit(category: str, key_func: KeyFunc = by_user, auth: Callable = verify_token):
    """Authenticate with `auth`, then count the call against `category`."""

    def dependency(
        request: Request,
        user: CurrentUser = Depends(auth),
        db: Session = Depends(get_db),
    ) -> CurrentUser:
        key = key_func(request, user)
        try:
            enforce(category, key, request)
        except RateLimitExceeded:
            AuditService.security_event(
                db, "RATE_LIMITED", request, {"category": category, "key": key}, actor=user.id
            )
            raise
        return user

    return dependency


def csrf_protect(request: Request, db: Session = Depends(get_db)) -> None:
    if not get_csrf_guard().verify(request):
        AuditService.security_event(db, "CSRF_REJECTED", request, {"method": request.method})
        raise CsrfFailure()


def validated(result: ValidationResult) -> dict:
    """Unwrap a ValidationResult or raise a 400 carrying the field errors."""
    if not result.ok:
        raise ValidationFailed(result.errors)
    return result.data


def get_gateway(db: Session = Depends(get_db)) -> GatewayClient:
    """Gateway client for the current configuration snapshot."""
    return ConfigService.gateway_client(db)


def client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }
