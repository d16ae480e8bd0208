"""
Webhook Service — Applies gateway-reported events to the ledger exactly once.

Signatures are verified by the route before anything here runs. Each delivery
is recorded in the webhook_events ledger; a repeated event id is acknowledged
without touching the transaction.
"""
import hashlib
import logging
from decimal import Decimal
from typing import Dict, Any, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coursepay.config import get_settings
from coursepay.models.transaction import PaymentTransaction, WebhookEvent
from coursepay.services.gateway_service import normalize_gateway_status, to_amount
from coursepay.services.transaction_service import TransactionService, transaction_locks, load_transaction
from coursepay.utils.hashing import canonical_json

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


def _first(event: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = event.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def derive_event_id(source: str, event: Dict[str, Any]) -> str:
    explicit = _first(event, "eventId", "event_id", "id")
    if explicit:
        return explicit[:128]
    digest = hashlib.sha256(canonical_json(event).encode("utf-8")).hexdigest()
    return f"{source}:{digest}"


class WebhookService:

    @staticmethod
    def _record(
        db: Session, event_id: str, event: Dict[str, Any], outcome: str,
        transaction_id: Optional[str], target: Optional[str], claimed: Optional[Decimal],
    ) -> str:
        db.add(WebhookEvent(
            event_id=event_id,
            transaction_id=transaction_id,
            event_type=_first(event, "eventType", "event_type", "type") or "payment.status",
            target_status=target,
            claimed_amount=claimed,
            outcome=outcome,
            payload={k: v for k, v in event.items() if k != "signature"},
        ))
        try:
            db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won the insert
            db.rollback()
            return DUPLICATE
        return outcome

    @staticmethod
    def ingest(db: Session, event: Dict[str, Any], source: str = "webhook") -> Dict[str, Any]:
        """Apply one verified gateway event.

        Returns {"received": True, "outcome": applied|duplicate|ignored, "transactionId": ...}.
        Unknown transactions and illegal transitions are acknowledged as ignored so the
        gateway stops redelivering them.
        """
        event_id = derive_event_id(source, event)
        if db.query(WebhookEvent.id).filter(WebhookEvent.event_id == event_id).first():
            logger.info("Duplicate %s event %s discarded", source, event_id)
            return {"received": True, "outcome": DUPLICATE, "transactionId": None}

        raw_status = _first(event, "status", "paymentStatus", "payment_status")
        target = normalize_gateway_status(raw_status)
        claimed = to_amount(event.get("amount"))
        txn_ref = _first(event, "transactionId", "transaction_id", "orderId", "order_id")
        gateway_ref = _first(event, "gatewayReference", "gatewayTransactionId", "sessionId", "session_id")

        txn = None
        if txn_ref or gateway_ref:
            filters = []
            if txn_ref:
                filters.append(PaymentTransaction.transaction_id == txn_ref)
            if gateway_ref:
                filters.append(PaymentTransaction.gateway_reference == gateway_ref)
            txn = db.query(PaymentTransaction).filter(or_(*filters)).first()

        if txn is None:
            logger.warning("%s event %s for unknown transaction %s", source, event_id, txn_ref or gateway_ref)
            outcome = WebhookService._record(db, event_id, event, IGNORED, txn_ref, target, claimed)
            return {"received": True, "outcome": outcome, "transactionId": txn_ref}

        if target is None:
            logger.warning("%s event %s carries unknown status '%s'", source, event_id, raw_status)
            outcome = WebhookService._record(db, event_id, event, IGNORED, txn.transaction_id, None, claimed)
            return {"received": True, "outcome": outcome, "transactionId": txn.transaction_id}

        transaction_id = txn.transaction_id
        timeout = get_settings().TRANSACTION_LOCK_TIMEOUT_SECONDS
        with transaction_locks.hold(transaction_id, blocking=True, timeout=timeout):
            # Another delivery of this event may have been applied while we waited
            if db.query(WebhookEvent.id).filter(WebhookEvent.event_id == event_id).first():
                return {"received": True, "outcome": DUPLICATE, "transactionId": transaction_id}

            txn = load_transaction(db, transaction_id)
            outcome = TransactionService.apply_gateway_status(
                db, txn, target,
                claimed_amount=claimed,
                source=source,
                failure_reason=_first(event, "errorMessage", "error_message", "reason"),
            )
            if outcome == APPLIED and gateway_ref and not txn.gateway_reference:
                txn.gateway_reference = gateway_ref
                db.commit()
            outcome = WebhookService._record(db, event_id, event, outcome, transaction_id, target, claimed)

        logger.info("%s event %s on %s -> %s (%s)", source, event_id, transaction_id, target, outcome)
        return {"received": True, "outcome": outcome, "transactionId": transaction_id}
