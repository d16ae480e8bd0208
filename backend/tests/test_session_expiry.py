"""
Tests for abandoned checkout sessions: the expiry sweep, its admin trigger and
the scheduled background jobs.
"""
from datetime import datetime, timedelta

from coursepay.models import AuditLog, TransactionStatus as S
from coursepay.services import scheduled_jobs
from coursepay.services.gateway_service import GatewayStatus
from coursepay.services.session_expiry_service import EXPIRED_REASON, SessionExpiryService
from coursepay.services.transaction_service import transaction_locks
from coursepay.utils.errors import GatewayTimeout
from coursepay.utils.scheduler import seconds_until

from conftest import auth_headers, csrf_headers, make_transaction

NOW = datetime(2024, 3, 15, 12, 0, 0)
# Default session timeout is 15 minutes
STALE = NOW - timedelta(minutes=20)
FRESH = NOW - timedelta(minutes=5)


def open_session(db, transaction_id="TXN_E000000001", status=S.PROCESSING, touched=STALE):
    return make_transaction(db, transaction_id, status=status, created_at=touched, updated_at=touched)


def reload(db, txn):
    db.expire_all()
    return db.get(type(txn), txn.id)


# ─── Sweep ───────────────────────────────────────────────────────────

def test_unpaid_session_expires(db, gateway, course):
    txn = open_session(db)

    stats = SessionExpiryService.sweep(db, gateway, now=NOW)

    assert stats == {"checked": 1, "expired": 1, "confirmed": 0, "skipped": 0}
    txn = reload(db, txn)
    assert txn.status == S.FAILED
    assert txn.failure_reason == EXPIRED_REASON
    change = db.query(AuditLog).filter(AuditLog.action == "STATUS_CHANGED").one()
    assert change.log_metadata["payload"]["source"] == "expiry_sweep"


def test_late_capture_is_confirmed_instead_of_expired(db, gateway, course):
    txn = open_session(db)
    gateway.remote_status = GatewayStatus(status=S.SUCCESS, raw_status="captured")

    stats = SessionExpiryService.sweep(db, gateway, now=NOW)

    assert stats["confirmed"] == 1
    assert stats["expired"] == 0
    assert reload(db, txn).status == S.SUCCESS


def test_inconclusive_gateway_status_leaves_session_open(db, gateway, course):
    txn = open_session(db)
    gateway.remote_status = GatewayStatus(status=None, raw_status="on_hold")

    stats = SessionExpiryService.sweep(db, gateway, now=NOW)

    assert stats["skipped"] == 1
    assert reload(db, txn).status == S.PROCESSING


def test_unreachable_gateway_leaves_session_open(db, gateway, course, monkeypatch):
    txn = open_session(db)

    def timeout(transaction_id):
        raise GatewayTimeout()

    monkeypatch.setattr(gateway, "query_status", timeout)

    stats = SessionExpiryService.sweep(db, gateway, now=NOW)

    assert stats == {"checked": 1, "expired": 0, "confirmed": 0, "skipped": 1}
    assert reload(db, txn).status == S.PROCESSING


def test_recent_and_closed_transactions_are_not_checked(db, gateway, course):
    open_session(db, "TXN_E000000001", touched=FRESH)
    open_session(db, "TXN_E000000002", status=S.SUCCESS)
    open_session(db, "TXN_E000000003", status=S.FAILED)
    stale_pending = open_session(db, "TXN_E000000004", status=S.PENDING)

    stats = SessionExpiryService.sweep(db, gateway, now=NOW)

    assert stats["checked"] == 1
    assert reload(db, stale_pending).status == S.FAILED


def test_busy_transaction_is_skipped(db, gateway, course):
    txn = open_session(db)

    with transaction_locks.hold(txn.transaction_id):
        stats = SessionExpiryService.sweep(db, gateway, now=NOW)

    assert stats["skipped"] == 1
    assert reload(db, txn).status == S.PROCESSING


# ─── Admin trigger ───────────────────────────────────────────────────

def test_admin_can_trigger_sweep(client, db, gateway, course):
    # Stale relative to the real clock
    open_session(db, touched=datetime.utcnow() - timedelta(hours=2))

    response = client.post("/api/admin/payment/expire-sessions", headers=csrf_headers(client, "admin-1", "admin"))

    assert response.status_code == 200
    assert response.json() == {"success": True, "checked": 1, "expired": 1, "confirmed": 0, "skipped": 0}


def test_sweep_trigger_requires_admin(client):
    response = client.post("/api/admin/payment/expire-sessions", headers=csrf_headers(client, "fin-1", "finance"))
    assert response.status_code == 403

    response = client.post("/api/admin/payment/expire-sessions", headers=auth_headers("admin-1", "admin"))
    assert response.status_code == 403


# ─── Scheduled jobs ──────────────────────────────────────────────────

def test_seconds_until_next_hour_mark():
    assert seconds_until(2, datetime(2024, 3, 15, 1, 30)) == 1800
    assert seconds_until(2, datetime(2024, 3, 15, 2, 0)) == 86400
    assert seconds_until(2, datetime(2024, 3, 15, 23, 0)) == 3 * 3600


def test_previous_day_covers_whole_day():
    start, end = scheduled_jobs.previous_day(datetime(2024, 3, 15, 2, 0, 5))

    assert start == datetime(2024, 3, 14)
    assert end == datetime(2024, 3, 14, 23, 59, 59, 999999)


def test_expiry_job_uses_configured_gateway(db, gateway, course, monkeypatch):
    txn = open_session(db)
    monkeypatch.setattr(scheduled_jobs.ConfigService, "gateway_client", lambda session: gateway)

    stats = scheduled_jobs.expire_stale_sessions(now=NOW)

    assert stats["expired"] == 1
    assert reload(db, txn).status == S.FAILED


def test_daily_reconciliation_job_runs_as_system(db, gateway, monkeypatch):
    make_transaction(db, "TXN_E000000001", created_at=datetime(2024, 3, 14, 10, 0))
    monkeypatch.setattr(scheduled_jobs.ConfigService, "gateway_client", lambda session: gateway)

    report = scheduled_jobs.reconcile_previous_day(now=NOW)

    assert report.performed_by == "system"
    assert report.run_status == "completed"
    assert report.period_start == datetime(2024, 3, 14)
    assert report.total_transactions == 1


def test_alert_job_notifies_for_each_alert(monkeypatch):
    alerts = [{"type": "high_failure_rate", "severity": "warning", "message": "Failure rate 40%"}]
    sent = []
    monkeypatch.setattr(
        scheduled_jobs.MonitoringService, "metrics", staticmethod(lambda db, time_range, now=None: {"alerts": alerts}),
    )
    monkeypatch.setattr(
        scheduled_jobs.NotificationService, "monitoring_alert",
        staticmethod(lambda recipient, alert: sent.append((recipient, alert))),
    )

    assert scheduled_jobs.check_payment_alerts() == alerts
    assert sent == [("payments-admin", alerts[0])]
