"""
Session Expiry Service — Closes checkout sessions the student never completed.

A transaction left in `pending` / `processing` longer than the configured
session timeout is re-checked with the gateway before anything changes:
  - gateway reports the payment captured  -> success (late confirmation)
  - gateway reports it pending or failed  -> failed, "Payment session expired"
  - unknown status or gateway unreachable -> left alone for the next sweep
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from coursepay.models.transaction import PaymentTransaction, TransactionStatus as S
from coursepay.services.config_service import ConfigService
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.transaction_service import TransactionService, transaction_locks, load_transaction
from coursepay.utils.errors import ConcurrencyConflict, PaymentServiceError

logger = logging.getLogger(__name__)

EXPIRED_REASON = "Payment session expired"
OPEN_STATUSES = (S.PENDING, S.PROCESSING)


class SessionExpiryService:

    @staticmethod
    def stale_transaction_ids(db: Session, cutoff: datetime) -> List[str]:
        rows = (
            db.query(PaymentTransaction.transaction_id)
            .filter(PaymentTransaction.status.in_(OPEN_STATUSES), PaymentTransaction.updated_at < cutoff)
            .order_by(PaymentTransaction.updated_at.asc())
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def sweep(db: Session, gateway: GatewayClient, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        timeout = ConfigService.get_snapshot(db).session_timeout_minutes
        cutoff = now - timedelta(minutes=timeout)
        stats = {"checked": 0, "expired": 0, "confirmed": 0, "skipped": 0}

        for transaction_id in SessionExpiryService.stale_transaction_ids(db, cutoff):
            stats["checked"] += 1
            try:
                with transaction_locks.hold(transaction_id, blocking=False):
                    outcome = SessionExpiryService._settle(db, gateway, transaction_id, cutoff)
            except ConcurrencyConflict:
                outcome = "skipped"
                logger.info("Expiry sweep skipped %s: transaction busy", transaction_id)
            except PaymentServiceError as e:
                outcome = "skipped"
                logger.warning("Expiry sweep could not confirm %s with the gateway: %s", transaction_id, e.message)
            stats[outcome] += 1

        logger.info(
            "Session expiry sweep (timeout %s min): %d checked, %d expired, %d confirmed, %d skipped",
            timeout, stats["checked"], stats["expired"], stats["confirmed"], stats["skipped"],
        )
        return stats

    @staticmethod
    def _settle(db: Session, gateway: GatewayClient, transaction_id: str, cutoff: datetime) -> str:
        """Caller holds the transaction lock."""
        txn = load_transaction(db, transaction_id)
        # A webhook may have moved it since the candidate list was read
        if txn.status not in OPEN_STATUSES or txn.updated_at >= cutoff:
            return "skipped"

        remote = gateway.query_status(transaction_id)
        if remote.status == S.SUCCESS:
            result = TransactionService.apply_gateway_status(
                db, txn, S.SUCCESS, claimed_amount=remote.amount, source="expiry_sweep",
            )
            return "confirmed" if result == "applied" else "skipped"
        if remote.status in (S.PROCESSING, S.FAILED):
            result = TransactionService.apply_gateway_status(
                db, txn, S.FAILED, source="expiry_sweep", failure_reason=EXPIRED_REASON,
            )
            if result == "applied":
                logger.info("Transaction %s expired (gateway status '%s')", transaction_id, remote.raw_status)
                return "expired"
            return "skipped"

        logger.warning(
            "Expiry sweep left %s open: gateway status '%s' is not conclusive", transaction_id, remote.raw_status,
        )
        return "skipped"
