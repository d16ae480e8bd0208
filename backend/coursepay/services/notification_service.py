"""
Notification Service — Fire-and-forget payment notifications.

Delivery (email / WhatsApp) belongs to the platform's messaging service; this
side only records the dispatch in the service log and never waits on delivery.
"""
import logging
import time
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_FAILED = "payment_failed"
REFUND_PROCESSED = "refund_processed"
RECONCILIATION_ALERT = "reconciliation_alert"
MONITORING_ALERT = "monitoring_alert"


class NotificationService:
    @staticmethod
    def dispatch(event: str, recipient: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.info("[NOTIFY] %s -> %s %s", event, recipient, data or {})
        return {
            "success": True,
            "event": event,
            "sid": f"NT{int(time.time() * 1000)}",
            "status": "queued",
        }

    @staticmethod
    def payment_confirmed(user_id: str, transaction_id: str, amount, course_id: str) -> Dict[str, Any]:
        return NotificationService.dispatch(PAYMENT_CONFIRMED, user_id, {
            "transactionId": transaction_id, "amount": str(amount), "courseId": course_id,
        })

    @staticmethod
    def payment_failed(user_id: str, transaction_id: str, reason: Optional[str]) -> Dict[str, Any]:
        return NotificationService.dispatch(PAYMENT_FAILED, user_id, {
            "transactionId": transaction_id, "reason": reason,
        })

    @staticmethod
    def refund_processed(user_id: str, transaction_id: str, amount, remaining) -> Dict[str, Any]:
        return NotificationService.dispatch(REFUND_PROCESSED, user_id, {
            "transactionId": transaction_id, "refundAmount": str(amount), "remaining": str(remaining),
        })

    @staticmethod
    def reconciliation_alert(actor: str, report_id: str, unmatched: int) -> Dict[str, Any]:
        return NotificationService.dispatch(RECONCILIATION_ALERT, actor, {
            "reportId": report_id, "unmatchedTransactions": unmatched,
        })

    @staticmethod
    def monitoring_alert(recipient: str, alert: Dict[str, Any]) -> Dict[str, Any]:
        return NotificationService.dispatch(MONITORING_ALERT, recipient, alert)
