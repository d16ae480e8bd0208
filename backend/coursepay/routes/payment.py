"""
Payment Routes — Student-facing payment lifecycle.
Handles: CSRF token issuance, initiation, status checks, retries and history.
"""
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, Response
from sqlalchemy.orm import Session

from coursepay.database import get_db
from coursepay.schemas.schemas import (
    CsrfTokenResponse, PaymentInitiateResponse, TransactionStatusResponse,
    PaymentRetryResponse, TransactionListResponse,
)
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.transaction_service import TransactionService
from coursepay.utils.auth import CurrentUser
from coursepay.utils.csrf import get_csrf_guard
from coursepay.utils.guards import (
    rate_limit, by_transaction, csrf_protect, validated, get_gateway, client_meta,
)
from coursepay.utils.validators import (
    validate_initiate_payment, validate_transaction_path, validate_history_query,
)

router = APIRouter(prefix="/api/payment", tags=["Payment"])


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(request: Request, response: Response):
    """Issue a CSRF token and (re)set its secret cookie."""
    token = get_csrf_guard().issue_token(request, response)
    return CsrfTokenResponse(csrfToken=token)


@router.post("/initiate", response_model=PaymentInitiateResponse, status_code=201)
def initiate_payment(
    request: Request,
    payload: Any = Body(None),
    user: CurrentUser = Depends(rate_limit("payment-initiate")),
    _csrf: None = Depends(csrf_protect),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Create a pending transaction for a course and submit it to the gateway."""
    data = validated(validate_initiate_payment(payload))
    transaction = TransactionService.initiate(db, gateway, user, data, **client_meta(request))
    return {
        "success": True,
        "message": "Payment initiated. Redirect the student to the payment URL.",
        "mode": transaction["mode"],
        "transaction": transaction,
    }


@router.get("/status/{transaction_id}", response_model=TransactionStatusResponse)
def payment_status(
    transaction_id: str,
    user: CurrentUser = Depends(rate_limit("status-check")),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Current status; in-flight payments are re-checked with the gateway."""
    validated(validate_transaction_path({"transactionId": transaction_id}))
    return {"success": True, "transaction": TransactionService.get_status(db, gateway, transaction_id, user)}


@router.post("/retry/{transaction_id}", response_model=PaymentRetryResponse)
def retry_payment(
    transaction_id: str,
    user: CurrentUser = Depends(rate_limit("payment-retry", by_transaction)),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Re-submit a failed payment (bounded by MAX_PAYMENT_ATTEMPTS)."""
    validated(validate_transaction_path({"transactionId": transaction_id}))
    transaction = TransactionService.retry(db, gateway, transaction_id, user)
    return {
        "success": True,
        "attemptsRemaining": transaction["attemptsRemaining"],
        "transaction": transaction,
    }


@router.get("/history", response_model=TransactionListResponse)
def payment_history(
    request: Request,
    user: CurrentUser = Depends(rate_limit("history")),
    db: Session = Depends(get_db),
):
    """The caller's own payments, newest first."""
    query = validated(validate_history_query(dict(request.query_params)))
    result = TransactionService.history(db, user.id, query["page"], query["limit"], query["status"])
    return {"success": True, **result}
