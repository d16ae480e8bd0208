"""
Tests for the admin API: refunds, gateway configuration, ledger listing and
audit chain verification.
"""
from datetime import datetime

from coursepay.models import AuditLog, PaymentRefund, PaymentTransaction, RefundStatus, TransactionStatus as S
from coursepay.utils import two_factor
from coursepay.utils.errors import GatewayTimeout

from conftest import auth_headers, csrf_headers, make_transaction

TXN_ID = "TXN_TEST0000000001"


def refund_body(amount, user_id="admin-1", **overrides):
    body = {
        "transactionId": TXN_ID,
        "amount": amount,
        "reason": "Student withdrew within the refund window",
        "twoFactorCode": two_factor.current_code(user_id),
    }
    body.update(overrides)
    return body


# ─── Refunds ─────────────────────────────────────────────────────────

def test_refund_scenario_through_api(client, db):
    make_transaction(db, status=S.SUCCESS, amount="1000.00")
    headers = csrf_headers(client, "admin-1", "admin")

    partial = client.post("/api/admin/payment/refund", json=refund_body(400), headers=headers)
    over = client.post("/api/admin/payment/refund", json=refund_body("600.01"), headers=headers)
    rest = client.post("/api/admin/payment/refund", json=refund_body("600.00"), headers=headers)

    assert partial.status_code == 200
    assert (partial.json()["status"], partial.json()["remainingAmount"]) == ("partial_refund", 600.0)
    assert over.status_code == 400
    assert over.json()["code"] == "AMOUNT_INVARIANT_VIOLATION"
    assert over.json()["remainingAmount"] == 600.0
    assert rest.status_code == 200
    assert (rest.json()["status"], rest.json()["refundedAmount"]) == ("refunded", 1000.0)


def test_refund_gateway_timeout_reports_pending_refund(client, db, gateway):
    make_transaction(db, status=S.SUCCESS)
    gateway.refund_error = GatewayTimeout()
    headers = csrf_headers(client, "admin-1", "admin")

    response = client.post("/api/admin/payment/refund", json=refund_body(250), headers=headers)

    assert response.status_code == 503
    body = response.json()
    assert (body["code"], body["status"], body["refundKey"]) == ("GATEWAY_TIMEOUT", "pending", f"{TXN_ID}-R1")
    assert db.query(PaymentRefund).one().status == RefundStatus.PENDING

    gateway.refund_error = None
    retry = client.post("/api/admin/payment/refund", json=refund_body(250), headers=headers)

    assert retry.status_code == 200
    assert retry.json()["refundKey"] == f"{TXN_ID}-R1"
    assert gateway.refund_keys == [f"{TXN_ID}-R1", f"{TXN_ID}-R1"]


def test_finance_role_may_refund(client, db):
    make_transaction(db, status=S.SUCCESS)

    response = client.post(
        "/api/admin/payment/refund",
        json=refund_body(10, user_id="fin-1"),
        headers=csrf_headers(client, "fin-1", "finance"),
    )

    assert response.status_code == 200


def test_students_cannot_refund(client, db):
    make_transaction(db, status=S.SUCCESS)

    response = client.post("/api/admin/payment/refund", json=refund_body(10), headers=csrf_headers(client))

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_refund_without_csrf_token(client, db):
    make_transaction(db, status=S.SUCCESS)

    response = client.post("/api/admin/payment/refund", json=refund_body(10), headers=auth_headers("admin-1", "admin"))

    assert response.status_code == 403
    assert response.json()["code"] == "CSRF_VALIDATION_FAILED"


def test_refund_with_wrong_two_factor_code(client, db):
    make_transaction(db, status=S.SUCCESS)
    # A code minted for someone else
    code = two_factor.current_code("admin-2")
    if code == two_factor.current_code("admin-1"):
        code = "000000" if code != "000000" else "111111"

    response = client.post(
        "/api/admin/payment/refund",
        json=refund_body(10, twoFactorCode=code),
        headers=csrf_headers(client, "admin-1", "admin"),
    )

    assert response.status_code == 403
    assert response.json()["code"] == "INVALID_2FA_CODE"
    db.expire_all()
    assert db.query(PaymentTransaction).one().refunded_amount == 0


def test_refund_validation_errors(client, db):
    response = client.post(
        "/api/admin/payment/refund",
        json={"transactionId": "bad", "amount": 0, "reason": "short"},
        headers=csrf_headers(client, "admin-1", "admin"),
    )

    assert response.status_code == 400
    assert {e["field"] for e in response.json()["errors"]} == {"transactionId", "amount", "reason"}


# ─── Gateway configuration ───────────────────────────────────────────

def test_config_is_returned_with_masked_secrets(client):
    response = client.get("/api/admin/payment/config", headers=auth_headers("admin-1", "admin"))

    config = response.json()["config"]
    assert config["merchantId"] == "TEST_MERCHANT"
    assert config["apiKey"] == "****-key"
    assert config["apiSecret"] == "****cret"
    assert "test-gateway-secret" not in response.text


def test_config_is_admin_only(client):
    response = client.get("/api/admin/payment/config", headers=auth_headers("fin-1", "finance"))
    assert response.status_code == 403


def test_config_update_applies_to_next_read(client, db):
    headers = csrf_headers(client, "admin-1", "admin")

    response = client.put(
        "/api/admin/payment/config",
        json={"enabledPaymentMethods": ["upi", "upi", "wallet"], "minTransactionAmount": 10},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json()["config"]["enabledPaymentMethods"] == ["upi", "wallet"]
    assert response.json()["config"]["lastModifiedBy"] == "admin-1"
    again = client.get("/api/admin/payment/config", headers=auth_headers("admin-1", "admin"))
    assert again.json()["config"]["minTransactionAmount"] == 10.0
    entry = db.query(AuditLog).filter(AuditLog.action == "CONFIG_UPDATED").one()
    assert entry.subject == "config:TEST_MERCHANT"


def test_config_update_rejects_inverted_bounds(client):
    response = client.put(
        "/api/admin/payment/config",
        json={"minTransactionAmount": 90000, "maxTransactionAmount": 5000},
        headers=csrf_headers(client, "admin-1", "admin"),
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "maxTransactionAmount"


def test_config_update_requires_fields_and_csrf(client):
    admin = auth_headers("admin-1", "admin")
    assert client.put("/api/admin/payment/config", json={"isActive": False}, headers=admin).status_code == 403
    assert client.put(
        "/api/admin/payment/config", json={}, headers=csrf_headers(client, "admin-1", "admin"),
    ).status_code == 400


# ─── Ledger listing ──────────────────────────────────────────────────

def test_admin_transaction_listing_filters(client, db):
    make_transaction(db, "TXN_L000000001", status=S.SUCCESS, created_at=datetime(2024, 3, 5))
    make_transaction(db, "TXN_L000000002", status=S.FAILED, user_id="student-2", created_at=datetime(2024, 3, 6))
    make_transaction(db, "TXN_L000000003", status=S.SUCCESS, created_at=datetime(2024, 4, 1))
    headers = auth_headers("fin-1", "finance")

    everything = client.get("/api/admin/payment/transactions", headers=headers).json()
    march = client.get(
        "/api/admin/payment/transactions?startDate=2024-03-01&endDate=2024-03-31&status=success", headers=headers,
    ).json()

    assert everything["pagination"]["totalItems"] == 3
    assert [t["transactionId"] for t in march["transactions"]] == ["TXN_L000000001"]


def test_admin_transaction_listing_rejects_bad_dates(client):
    response = client.get(
        "/api/admin/payment/transactions?startDate=yesterday", headers=auth_headers("admin-1", "admin"),
    )
    assert response.status_code == 400
    assert response.json()["errors"][0]["field"] == "startDate"


# ─── Audit ───────────────────────────────────────────────────────────

def test_audit_chain_verifies_after_refund(client, db):
    make_transaction(db, status=S.SUCCESS)
    client.post(
        "/api/admin/payment/refund", json=refund_body(100), headers=csrf_headers(client, "admin-1", "admin"),
    )

    response = client.get(f"/api/admin/audit/{TXN_ID}/verify", headers=auth_headers("admin-1", "admin"))

    assert response.status_code == 200
    assert response.json()["valid"] is True
    assert response.json()["total_entries"] == 1
