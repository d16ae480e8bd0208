from coursepay.routes.payment import router as payment_router
from coursepay.routes.webhook import router as webhook_router
from coursepay.routes.admin import router as admin_router
from coursepay.routes.reconciliation import router as reconciliation_router
from coursepay.routes.monitoring import router as monitoring_router

__all__ = ["payment_router", "webhook_router", "admin_router", "reconciliation_router", "monitoring_router"]
