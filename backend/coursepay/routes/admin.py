"""
Admin Routes — Refunds, gateway configuration, ledger listing and audit verification.
"""
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.orm import Session

from coursepay.database import get_db
from coursepay.schemas.schemas import (
    RefundResponse, GatewayConfigResponse, TransactionListResponse, AuditVerifyResponse, SessionSweepResponse,
)
from coursepay.services.audit_service import AuditService
from coursepay.services.config_service import ConfigService
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.session_expiry_service import SessionExpiryService
from coursepay.services.transaction_service import TransactionService
from coursepay.utils.auth import CurrentUser, require_admin, require_finance
from coursepay.utils.errors import ValidationFailed
from coursepay.utils.guards import rate_limit, csrf_protect, validated, get_gateway, client_meta
from coursepay.utils.validators import (
    validate_refund, validate_gateway_config, validate_history_query, parse_iso_datetime,
)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ─── Refunds ─────────────────────────────────────────────────────────

@router.post("/payment/refund", response_model=RefundResponse)
def refund_payment(
    request: Request,
    payload: Any = Body(None),
    user: CurrentUser = Depends(rate_limit("refund", auth=require_finance)),
    _csrf: None = Depends(csrf_protect),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Full or partial refund of a successful payment."""
    data = validated(validate_refund(payload))
    result = TransactionService.refund(db, gateway, data, user, ip_address=client_meta(request)["ip_address"])
    return {"success": True, **result}


# ─── Gateway configuration ───────────────────────────────────────────

@router.get("/payment/config", response_model=GatewayConfigResponse)
def get_gateway_config(
    user: CurrentUser = Depends(rate_limit("config", auth=require_admin)),
    db: Session = Depends(get_db),
):
    """Current configuration with credentials masked."""
    return {"success": True, "config": ConfigService.to_public(ConfigService.get_snapshot(db))}


@router.put("/payment/config", response_model=GatewayConfigResponse)
def update_gateway_config(
    request: Request,
    payload: Any = Body(None),
    user: CurrentUser = Depends(rate_limit("config", auth=require_admin)),
    _csrf: None = Depends(csrf_protect),
    db: Session = Depends(get_db),
):
    """Partial update; takes effect for the next payment initiated."""
    changes = validated(validate_gateway_config(payload))
    if not changes:
        raise ValidationFailed([{"field": "body", "message": "No configuration fields supplied"}])
    snapshot = ConfigService.update(db, changes, user.id, ip_address=client_meta(request)["ip_address"])
    return {"success": True, "config": ConfigService.to_public(snapshot)}


# ─── Ledger ──────────────────────────────────────────────────────────

@router.get("/payment/transactions", response_model=TransactionListResponse)
def list_transactions(
    request: Request,
    user: CurrentUser = Depends(rate_limit("config", auth=require_finance)),
    db: Session = Depends(get_db),
):
    """All transactions, filterable by status and creation date range."""
    params = dict(request.query_params)
    query = validated(validate_history_query(params))

    errors = []
    start = end = None
    for key in ("startDate", "endDate"):
        if params.get(key):
            parsed = parse_iso_datetime(params[key])
            if parsed is None:
                errors.append({"field": key, "message": f"{key} must be an ISO 8601 date"})
            elif key == "startDate":
                start = parsed
            else:
                end = parsed
    if start and end and end < start:
        errors.append({"field": "endDate", "message": "End date must be after start date"})
    if errors:
        raise ValidationFailed(errors)

    result = TransactionService.history(
        db, None, query["page"], query["limit"], query["status"], start=start, end=end,
    )
    return {"success": True, **result}


# ─── Checkout sessions ───────────────────────────────────────────────

@router.post("/payment/expire-sessions", response_model=SessionSweepResponse)
def expire_sessions(
    user: CurrentUser = Depends(rate_limit("config", auth=require_admin)),
    _csrf: None = Depends(csrf_protect),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Run the session expiry sweep now instead of waiting for the scheduler."""
    return {"success": True, **SessionExpiryService.sweep(db, gateway)}


# ─── Audit ───────────────────────────────────────────────────────────

@router.get("/audit/{subject}/verify", response_model=AuditVerifyResponse)
def verify_audit_chain(
    subject: str,
    user: CurrentUser = Depends(rate_limit("config", auth=require_admin)),
    db: Session = Depends(get_db),
):
    """Recompute the hash chain for a transaction, report or the security log."""
    return {"success": True, "subject": subject, **AuditService.verify_chain(db, subject)}
