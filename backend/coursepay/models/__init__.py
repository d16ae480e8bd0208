from coursepay.models.transaction import PaymentTransaction, PaymentRefund, RefundStatus, WebhookEvent, TransactionStatus
from coursepay.models.reconciliation import ReconciliationReport, Discrepancy, RunStatus, DiscrepancyType
from coursepay.models.gateway_config import GatewayConfig, PAYMENT_METHOD_WHITELIST
from coursepay.models.audit import AuditLog
from coursepay.models.course import Course, Enrollment

__all__ = [
    "PaymentTransaction", "PaymentRefund", "RefundStatus", "WebhookEvent", "TransactionStatus",
    "ReconciliationReport", "Discrepancy", "RunStatus", "DiscrepancyType",
    "GatewayConfig", "PAYMENT_METHOD_WHITELIST",
    "AuditLog",
    "Course", "Enrollment",
]
