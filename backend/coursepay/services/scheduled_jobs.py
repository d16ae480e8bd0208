"""
Scheduled Jobs — Session expiry, daily reconciliation and payment alerts.

Each job owns its database session and builds the gateway client from the
current configuration snapshot.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from coursepay.config import get_settings
from coursepay.database import SessionLocal
from coursepay.models.reconciliation import ReconciliationReport
from coursepay.services.config_service import ConfigService
from coursepay.services.monitoring_service import MonitoringService
from coursepay.services.notification_service import NotificationService
from coursepay.services.reconciliation_service import ReconciliationService
from coursepay.services.session_expiry_service import SessionExpiryService
from coursepay.utils.scheduler import Scheduler

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def expire_stale_sessions(now: Optional[datetime] = None) -> Dict[str, int]:
    db = SessionLocal()
    try:
        return SessionExpiryService.sweep(db, ConfigService.gateway_client(db), now=now)
    finally:
        db.close()


def previous_day(now: Optional[datetime] = None):
    """[yesterday 00:00, yesterday 23:59:59.999999] in UTC."""
    today = (now or datetime.utcnow()).replace(hour=0, minute=0, second=0, microsecond=0)
    return today - timedelta(days=1), today - timedelta(microseconds=1)


def reconcile_previous_day(now: Optional[datetime] = None) -> ReconciliationReport:
    start, end = previous_day(now)
    db = SessionLocal()
    try:
        report = ReconciliationService.start(db, start, end, SYSTEM_ACTOR)
        return ReconciliationService.execute(db, report.id, ConfigService.gateway_client(db))
    finally:
        db.close()


def check_payment_alerts(now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    db = SessionLocal()
    try:
        alerts = MonitoringService.metrics(db, "24h", now=now)["alerts"]
    finally:
        db.close()
    recipient = get_settings().ALERT_RECIPIENT
    for alert in alerts:
        NotificationService.monitoring_alert(recipient, alert)
    return alerts


def register_jobs(scheduler: Scheduler) -> None:
    settings = get_settings()
    if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
        scheduler.schedule_periodic(
            "session-expiry", settings.SESSION_SWEEP_INTERVAL_SECONDS, expire_stale_sessions,
            initial_delay=settings.SESSION_SWEEP_INTERVAL_SECONDS,
        )
    if 0 <= settings.DAILY_RECONCILIATION_HOUR <= 23:
        scheduler.schedule_daily("daily-reconciliation", settings.DAILY_RECONCILIATION_HOUR, reconcile_previous_day)
    if settings.MONITORING_ALERT_INTERVAL_SECONDS > 0:
        scheduler.schedule_periodic(
            "payment-alerts", settings.MONITORING_ALERT_INTERVAL_SECONDS, check_payment_alerts,
            initial_delay=settings.MONITORING_ALERT_INTERVAL_SECONDS,
        )
