"""
Tests for the payment lifecycle: transitions, submission, retries and refunds.
"""
import threading
from decimal import Decimal

import pytest

from coursepay.models import AuditLog, Enrollment, PaymentRefund, PaymentTransaction, RefundStatus, TransactionStatus as S
from coursepay.services.audit_service import AuditService
from coursepay.services.config_service import ConfigService
from coursepay.services.transaction_service import (
    TransactionService,
    TransactionLockRegistry,
    can_transition,
    transaction_locks,
    transition,
)
from coursepay.utils import two_factor
from coursepay.utils.auth import CurrentUser
from coursepay.utils.errors import (
    AmountInvariantViolation,
    BusinessRuleViolation,
    ConcurrencyConflict,
    ForbiddenError,
    GatewayRejected,
    GatewayTimeout,
    IllegalTransition,
    NotFound,
    RefundPending,
    ValidationFailed,
)

from conftest import make_transaction

STUDENT = CurrentUser(id="student-1", role="user")
ADMIN = CurrentUser(id="admin-1", role="admin")


def refund_request(amount: str, txn_id: str = "TXN_TEST0000000001", code: str = None) -> dict:
    return {
        "transactionId": txn_id,
        "amount": Decimal(amount),
        "reason": "Student withdrew from the course",
        "twoFactorCode": code if code is not None else two_factor.current_code(ADMIN.id),
    }


# ─── Transition table ────────────────────────────────────────────────

@pytest.mark.parametrize("current,target", [
    (S.PENDING, S.PROCESSING),
    (S.PENDING, S.FAILED),
    (S.PROCESSING, S.SUCCESS),
    (S.PROCESSING, S.FAILED),
    (S.FAILED, S.PROCESSING),
    (S.SUCCESS, S.PARTIAL_REFUND),
    (S.SUCCESS, S.REFUNDED),
    (S.PARTIAL_REFUND, S.PARTIAL_REFUND),
    (S.PARTIAL_REFUND, S.REFUNDED),
])
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (S.PENDING, S.SUCCESS),
    (S.FAILED, S.SUCCESS),
    (S.SUCCESS, S.FAILED),
    (S.SUCCESS, S.PROCESSING),
    (S.REFUNDED, S.SUCCESS),
    (S.REFUNDED, S.PARTIAL_REFUND),
])
def test_illegal_transitions_raise(current, target):
    txn = PaymentTransaction(transaction_id="TXN_TEST0000000001", status=current)

    assert not can_transition(current, target)
    with pytest.raises(IllegalTransition) as exc:
        transition(txn, target)
    assert exc.value.current == current
    assert txn.status == current


def test_transition_to_current_state_is_noop():
    txn = PaymentTransaction(transaction_id="TXN_TEST0000000001", status=S.PROCESSING)
    assert transition(txn, S.PROCESSING) is False
    assert txn.status == S.PROCESSING


def test_success_sets_completed_at_and_clears_failure():
    txn = PaymentTransaction(transaction_id="TXN_TEST0000000001", status=S.PROCESSING, failure_reason="x")
    assert transition(txn, S.SUCCESS) is True
    assert txn.completed_at is not None
    assert txn.failure_reason is None


# ─── Lock registry ───────────────────────────────────────────────────

def test_non_blocking_lock_conflicts_while_held():
    registry = TransactionLockRegistry()
    with registry.hold("TXN_A"):
        assert registry.is_held("TXN_A")
        with pytest.raises(ConcurrencyConflict):
            with registry.hold("TXN_A", blocking=False):
                pass
        # Other transactions are unaffected
        with registry.hold("TXN_B", blocking=False):
            pass
    assert not registry.is_held("TXN_A")


def test_blocking_lock_waits_for_release():
    registry = TransactionLockRegistry()
    order = []
    entered = threading.Event()

    def holder():
        with registry.hold("TXN_A"):
            entered.set()
            order.append("holder")

    with registry.hold("TXN_A"):
        worker = threading.Thread(target=holder)
        worker.start()
        assert not entered.wait(0.1)
        order.append("main")
    worker.join(2)

    assert order == ["main", "holder"]


def test_blocking_lock_times_out():
    registry = TransactionLockRegistry()
    with registry.hold("TXN_A"):
        result = {}

        def waiter():
            try:
                with registry.hold("TXN_A", timeout=0.05):
                    result["acquired"] = True
            except ConcurrencyConflict:
                result["conflict"] = True

        worker = threading.Thread(target=waiter)
        worker.start()
        worker.join(2)

    assert result == {"conflict": True}


# ─── Initiation ──────────────────────────────────────────────────────

def test_initiate_creates_processing_transaction(db, gateway, course):
    data = {"courseId": course.id, "discountCode": None, "mode": "checkout", "paymentMethod": "upi"}

    result = TransactionService.initiate(db, gateway, STUDENT, data, ip_address="10.0.0.1")

    assert result["status"] == S.PROCESSING
    assert result["amount"] == 1000.0
    assert result["attempts"] == 1
    assert result["paymentUrl"].endswith(result["transactionId"])
    assert gateway.created == [result["transactionId"]]
    actions = [e.action for e in AuditService.get_trail(db, result["transactionId"])]
    assert actions == ["PAYMENT_INITIATED", "PAYMENT_SUBMITTED"]


def test_initiate_gateway_rejection_marks_failed(db, gateway, course):
    gateway.create_error = GatewayRejected("Card network declined")
    data = {"courseId": course.id, "mode": "checkout", "paymentMethod": "upi"}

    with pytest.raises(GatewayRejected) as exc:
        TransactionService.initiate(db, gateway, STUDENT, data)

    txn = db.query(PaymentTransaction).one()
    assert txn.status == S.FAILED
    assert txn.failure_reason == "Card network declined"
    assert exc.value.extra["transactionId"] == txn.transaction_id


def test_initiate_gateway_timeout_stays_processing(db, gateway, course):
    gateway.create_error = GatewayTimeout()
    data = {"courseId": course.id, "mode": "checkout", "paymentMethod": "upi"}

    with pytest.raises(GatewayTimeout) as exc:
        TransactionService.initiate(db, gateway, STUDENT, data)

    assert exc.value.status_code == 503
    assert db.query(PaymentTransaction).one().status == S.PROCESSING


def test_initiate_rejects_disabled_method_and_inactive_course(db, gateway, course):
    ConfigService.update(db, {"enabled_payment_methods": ["credit_card"]}, actor="admin-1")
    with pytest.raises(BusinessRuleViolation):
        TransactionService.initiate(db, gateway, STUDENT, {"courseId": course.id, "paymentMethod": "upi"})

    course.is_active = False
    db.commit()
    with pytest.raises(NotFound):
        TransactionService.initiate(db, gateway, STUDENT, {"courseId": course.id, "paymentMethod": "credit_card"})
    assert db.query(PaymentTransaction).count() == 0


def test_initiate_rejects_price_outside_bounds(db, gateway, course):
    ConfigService.update(db, {"max_transaction_amount": Decimal("500.00")}, actor="admin-1")
    with pytest.raises(BusinessRuleViolation):
        TransactionService.initiate(db, gateway, STUDENT, {"courseId": course.id, "paymentMethod": "upi"})


# ─── Retry ───────────────────────────────────────────────────────────

def test_retry_resubmits_failed_payment(db, gateway):
    make_transaction(db, status=S.FAILED, attempts=1, failure_reason="declined")

    result = TransactionService.retry(db, gateway, "TXN_TEST0000000001", STUDENT)

    assert result["status"] == S.PROCESSING
    assert result["attempts"] == 2
    assert result["attemptsRemaining"] == 2
    assert result["failureReason"] is None


def test_retry_ceiling(db, gateway):
    make_transaction(db, status=S.FAILED, attempts=4)

    with pytest.raises(BusinessRuleViolation) as exc:
        TransactionService.retry(db, gateway, "TXN_TEST0000000001", STUDENT)
    assert exc.value.code == "MAX_ATTEMPTS_EXCEEDED"


def test_retry_only_failed_and_only_owner(db, gateway):
    make_transaction(db, status=S.SUCCESS)
    with pytest.raises(IllegalTransition):
        TransactionService.retry(db, gateway, "TXN_TEST0000000001", STUDENT)
    with pytest.raises(ForbiddenError):
        TransactionService.retry(db, gateway, "TXN_TEST0000000001", CurrentUser(id="student-2", role="user"))


def test_retry_fails_fast_while_transaction_busy(db, gateway):
    make_transaction(db, status=S.FAILED)

    with transaction_locks.hold("TXN_TEST0000000001"):
        with pytest.raises(ConcurrencyConflict):
            TransactionService.retry(db, gateway, "TXN_TEST0000000001", STUDENT)

    assert db.query(PaymentTransaction).one().attempts == 1


# ─── Refunds ─────────────────────────────────────────────────────────

def test_partial_then_full_refund(db, gateway):
    make_transaction(db, status=S.SUCCESS, amount="1000.00")
    db.add(Enrollment(user_id="student-1", course_id="COURSE_101", status="active"))
    db.commit()

    first = TransactionService.refund(db, gateway, refund_request("400.00"), ADMIN)
    assert first["status"] == S.PARTIAL_REFUND
    assert first["refundedAmount"] == 400.0
    assert first["remainingAmount"] == 600.0

    second = TransactionService.refund(db, gateway, refund_request("600.00"), ADMIN)
    assert second["status"] == S.REFUNDED
    assert second["refundedAmount"] == 1000.0
    assert second["remainingAmount"] == 0.0

    rows = db.query(PaymentRefund).order_by(PaymentRefund.id).all()
    assert [r.amount for r in rows] == [Decimal("400.00"), Decimal("600.00")]
    assert db.query(Enrollment).one().status == "suspended"
    assert gateway.refunds == [("TXN_TEST0000000001", Decimal("400.00")), ("TXN_TEST0000000001", Decimal("600.00"))]


def test_over_refund_rejected_and_ledger_unchanged(db, gateway):
    make_transaction(db, status=S.PARTIAL_REFUND, amount="1000.00", refunded_amount="400.00")

    with pytest.raises(AmountInvariantViolation) as exc:
        TransactionService.refund(db, gateway, refund_request("600.01"), ADMIN)

    assert exc.value.extra["remainingAmount"] == 600.0
    db.expire_all()
    txn = db.query(PaymentTransaction).one()
    assert txn.refunded_amount == Decimal("400.00")
    assert txn.status == S.PARTIAL_REFUND
    assert gateway.refunds == []


def test_refund_requires_settled_payment(db, gateway):
    make_transaction(db, status=S.PROCESSING)
    with pytest.raises(IllegalTransition):
        TransactionService.refund(db, gateway, refund_request("10.00"), ADMIN)


def test_refund_two_factor_checks(db, gateway):
    make_transaction(db, status=S.SUCCESS)

    with pytest.raises(ValidationFailed):
        TransactionService.refund(db, gateway, {**refund_request("10.00"), "twoFactorCode": None}, ADMIN)

    wrong = "000000" if two_factor.current_code(ADMIN.id) != "000000" else "111111"
    with pytest.raises(ForbiddenError) as exc:
        TransactionService.refund(db, gateway, refund_request("10.00", code=wrong), ADMIN)
    assert exc.value.code == "INVALID_2FA_CODE"
    assert gateway.refunds == []


def test_refund_fails_fast_while_webhook_holds_lock(db, gateway):
    make_transaction(db, status=S.SUCCESS)

    with transaction_locks.hold("TXN_TEST0000000001"):
        with pytest.raises(ConcurrencyConflict):
            TransactionService.refund(db, gateway, refund_request("10.00"), ADMIN)


def test_refund_timeout_is_recorded_and_resubmission_reuses_key(db, gateway):
    make_transaction(db, status=S.SUCCESS, amount="1000.00")
    gateway.refund_error = GatewayTimeout()

    with pytest.raises(GatewayTimeout) as exc:
        TransactionService.refund(db, gateway, refund_request("400.00"), ADMIN)

    assert exc.value.extra["status"] == "pending"
    assert exc.value.extra["refundKey"] == "TXN_TEST0000000001-R1"
    db.expire_all()
    txn = db.query(PaymentTransaction).one()
    assert (txn.status, txn.refunded_amount) == (S.SUCCESS, Decimal("0.00"))
    pending = db.query(PaymentRefund).one()
    assert (pending.status, pending.amount) == (RefundStatus.PENDING, Decimal("400.00"))
    assert db.query(AuditLog).filter(AuditLog.action == "REFUND_SUBMIT_TIMEOUT").count() == 1

    gateway.refund_error = None
    result = TransactionService.refund(db, gateway, refund_request("400.00"), ADMIN)

    assert result["refundKey"] == "TXN_TEST0000000001-R1"
    assert result["status"] == S.PARTIAL_REFUND
    assert gateway.refund_keys == ["TXN_TEST0000000001-R1", "TXN_TEST0000000001-R1"]
    db.expire_all()
    row = db.query(PaymentRefund).one()
    assert (row.status, row.gateway_refund_id) == (RefundStatus.COMPLETED, "RFD_1")


def test_new_refund_waits_for_unconfirmed_one(db, gateway):
    make_transaction(db, status=S.SUCCESS, amount="1000.00")
    gateway.refund_error = GatewayTimeout()
    with pytest.raises(GatewayTimeout):
        TransactionService.refund(db, gateway, refund_request("400.00"), ADMIN)
    gateway.refund_error = None

    with pytest.raises(RefundPending) as exc:
        TransactionService.refund(db, gateway, refund_request("100.00"), ADMIN)

    assert exc.value.extra["pendingAmount"] == 400.0
    assert gateway.refund_keys == ["TXN_TEST0000000001-R1"]


def test_rejected_resubmission_closes_pending_refund(db, gateway):
    make_transaction(db, status=S.SUCCESS, amount="1000.00")
    gateway.refund_error = GatewayTimeout()
    with pytest.raises(GatewayTimeout):
        TransactionService.refund(db, gateway, refund_request("400.00"), ADMIN)

    gateway.refund_error = GatewayRejected("Refund window closed")
    with pytest.raises(GatewayRejected):
        TransactionService.refund(db, gateway, refund_request("400.00"), ADMIN)

    db.expire_all()
    assert db.query(PaymentRefund).one().status == RefundStatus.FAILED

    gateway.refund_error = None
    result = TransactionService.refund(db, gateway, refund_request("100.00"), ADMIN)
    assert result["refundKey"] == "TXN_TEST0000000001-R2"
    assert result["refundedAmount"] == 100.0


def test_gateway_refunded_status_completes_pending_refund(db, gateway):
    make_transaction(db, status=S.SUCCESS, amount="1000.00")
    gateway.refund_error = GatewayTimeout()
    with pytest.raises(GatewayTimeout):
        TransactionService.refund(db, gateway, refund_request("1000.00"), ADMIN)

    txn = db.query(PaymentTransaction).one()
    assert TransactionService.apply_gateway_status(db, txn, S.REFUNDED) == "applied"

    db.expire_all()
    assert db.query(PaymentRefund).one().status == RefundStatus.COMPLETED
    assert db.query(PaymentTransaction).one().refunded_amount == Decimal("1000.00")


# ─── Gateway-reported status ─────────────────────────────────────────

def test_apply_gateway_success_activates_enrollment(db):
    txn = make_transaction(db, status=S.PROCESSING)

    outcome = TransactionService.apply_gateway_status(db, txn, S.SUCCESS, claimed_amount=Decimal("1000.00"))

    assert outcome == "applied"
    enrollment = db.query(Enrollment).one()
    assert (enrollment.status, enrollment.transaction_id) == ("active", txn.transaction_id)


def test_apply_gateway_status_flags_amount_without_overwriting(db):
    txn = make_transaction(db, status=S.PROCESSING, amount="1000.00")

    TransactionService.apply_gateway_status(db, txn, S.SUCCESS, claimed_amount=Decimal("10.00"))

    db.expire_all()
    txn = db.query(PaymentTransaction).one()
    assert txn.amount == Decimal("1000.00")
    assert txn.amount_flagged is True
    assert txn.claimed_amount == Decimal("10.00")


def test_apply_gateway_status_ignores_illegal_moves(db):
    txn = make_transaction(db, status=S.REFUNDED, refunded_amount="1000.00")

    assert TransactionService.apply_gateway_status(db, txn, S.SUCCESS) == "ignored"
    assert TransactionService.apply_gateway_status(db, txn, S.REFUNDED) == "duplicate"
