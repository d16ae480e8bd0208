from coursepay.services.audit_service import AuditService
from coursepay.services.config_service import ConfigService
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.transaction_service import TransactionService
from coursepay.services.webhook_service import WebhookService
from coursepay.services.reconciliation_service import ReconciliationService
from coursepay.services.monitoring_service import MonitoringService
from coursepay.services.session_expiry_service import SessionExpiryService

__all__ = [
    "AuditService", "ConfigService", "GatewayClient", "TransactionService",
    "WebhookService", "ReconciliationService", "MonitoringService", "SessionExpiryService",
]
