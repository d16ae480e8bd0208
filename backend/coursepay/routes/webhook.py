"""
Gateway Callback Routes — Server-to-server webhooks and browser return redirects.

Authenticated by gateway signature only; CSRF does not apply here.
"""
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from coursepay.config import get_settings
from coursepay.database import get_db
from coursepay.schemas.schemas import WebhookAck
from coursepay.services.audit_service import AuditService
from coursepay.services.config_service import ConfigService
from coursepay.services.webhook_service import WebhookService
from coursepay.utils.errors import InvalidSignature, ValidationFailed
from coursepay.utils.signature import GatewaySignatureVerifier

router = APIRouter(prefix="/api/payment", tags=["Gateway Callbacks"])


def _verifier(db: Session) -> GatewaySignatureVerifier:
    return GatewaySignatureVerifier(lambda: ConfigService.get_snapshot(db).api_secret)


def _handle_webhook(request: Request, body: bytes, db: Session) -> dict:
    if not _verifier(db).verify(request, body):
        AuditService.security_event(db, "WEBHOOK_SIGNATURE_INVALID", request, {"source": "webhook"}, actor="gateway")
        raise InvalidSignature()

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationFailed([{"field": "body", "message": "Webhook body must be valid JSON"}])
    if not isinstance(event, dict):
        raise ValidationFailed([{"field": "body", "message": "Webhook body must be a JSON object"}])

    return WebhookService.ingest(db, event, source="webhook")


@router.post("/webhook", response_model=WebhookAck)
async def gateway_webhook(request: Request, db: Session = Depends(get_db)):
    """Gateway notification. The signature covers the raw body, so it is read unparsed."""
    body = await request.body()
    return await run_in_threadpool(_handle_webhook, request, body, db)


@router.get("/callback")
def gateway_callback(request: Request, db: Session = Depends(get_db)):
    """Browser return from hosted checkout: apply the signed result, then redirect."""
    params = dict(request.query_params)
    if not _verifier(db).verify(request):
        AuditService.security_event(db, "WEBHOOK_SIGNATURE_INVALID", request, {"source": "callback"}, actor="gateway")
        raise InvalidSignature()

    result = WebhookService.ingest(db, params, source="callback")
    transaction_id = result["transactionId"] or params.get("transactionId", "")
    client_url = get_settings().CLIENT_URL.rstrip("/")
    return RedirectResponse(url=f"{client_url}/payment/status/{transaction_id}", status_code=302)
