"""
Transaction Service — Payment lifecycle state machine.

    pending ──► processing ──► success ──► partial_refund ──► refunded
       │            │             └───────────────────────────►┘
       └──► failed ◄┘
              └──► processing (retry)

Every transition goes through `transition()`. Mutations of one transaction are
serialized by an in-process lock registry and, across processes, by the
optimistic `version` column. Gateway-driven updates (webhooks) wait for the lock;
client-driven ones (retry, refund) give up immediately with 409, so a webhook
always wins a race against a client action.
"""
import logging
import math
import secrets
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, Iterator, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from coursepay.config import get_settings
from coursepay.models.transaction import PaymentTransaction, PaymentRefund, RefundStatus, TransactionStatus as S
from coursepay.services.audit_service import AuditService
from coursepay.services.config_service import ConfigService
from coursepay.services.course_service import CourseService
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.notification_service import NotificationService
from coursepay.utils.auth import CurrentUser, FINANCE_ROLES
from coursepay.utils.errors import (
    PaymentServiceError, NotFound, ForbiddenError, BusinessRuleViolation, IllegalTransition,
    ConcurrencyConflict, AmountInvariantViolation, GatewayTimeout, GatewayUnavailable, GatewayRejected,
    RefundPending, ValidationFailed,
)
from coursepay.utils import two_factor

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    S.PENDING: {S.PROCESSING, S.FAILED},
    S.PROCESSING: {S.SUCCESS, S.FAILED},
    S.FAILED: {S.PROCESSING},
    S.SUCCESS: {S.PARTIAL_REFUND, S.REFUNDED},
    S.PARTIAL_REFUND: {S.PARTIAL_REFUND, S.REFUNDED},
    S.REFUNDED: set(),
}

AMOUNT_TOLERANCE = Decimal("0.01")


def can_transition(current: str, target: str) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS.get(current, set())


def transition(txn: PaymentTransaction, target: str) -> bool:
    """Move txn to target. Returns False for a no-op (already there)."""
    current = txn.status
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise IllegalTransition(current, target)
    txn.status = target
    txn.updated_at = datetime.utcnow()
    if target == S.SUCCESS:
        txn.completed_at = txn.updated_at
        txn.failure_reason = None
    logger.info("Transaction %s: %s -> %s", txn.transaction_id, current, target)
    return True


# ─── Per-transaction mutual exclusion ────────────────────────────────

class TransactionLockRegistry:
    """Reference-counted map of transaction id -> lock."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    @contextmanager
    def hold(self, key: str, blocking: bool = True, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self._checkout(key)
        if blocking:
            acquired = lock.acquire(timeout=timeout if timeout is not None else -1)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            self._checkin(key)
            raise ConcurrencyConflict()
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry[0].locked()


transaction_locks = TransactionLockRegistry()


# ─── Helpers ─────────────────────────────────────────────────────────

def generate_transaction_id() -> str:
    return f"TXN_{int(time.time() * 1000):X}_{secrets.token_hex(4).upper()}"


def commit_or_conflict(db: Session) -> None:
    """Commit; a concurrent writer in another process surfaces as 409."""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("Optimistic concurrency check failed: %s", e)
        raise ConcurrencyConflict() from e


def load_transaction(db: Session, transaction_id: str) -> PaymentTransaction:
    txn = (
        db.query(PaymentTransaction)
        .populate_existing()
        .filter(PaymentTransaction.transaction_id == transaction_id)
        .first()
    )
    if txn is None:
        raise NotFound("Transaction not found")
    return txn


def pending_refund(db: Session, transaction_id: str) -> Optional[PaymentRefund]:
    return (
        db.query(PaymentRefund)
        .filter(PaymentRefund.transaction_id == transaction_id, PaymentRefund.status == RefundStatus.PENDING)
        .order_by(PaymentRefund.id.asc())
        .first()
    )


def next_refund_key(db: Session, transaction_id: str) -> str:
    """Deterministic per submission: the same key is sent again on a resubmission."""
    sequence = db.query(PaymentRefund).filter(PaymentRefund.transaction_id == transaction_id).count() + 1
    return f"{transaction_id}-R{sequence}"


def serialize_transaction(txn: PaymentTransaction) -> Dict[str, Any]:
    return {
        "transactionId": txn.transaction_id,
        "courseId": txn.course_id,
        "userId": txn.user_id,
        "amount": float(txn.amount),
        "currency": txn.currency,
        "paymentMethod": txn.payment_method,
        "discountCode": txn.discount_code,
        "status": txn.status,
        "gatewayReference": txn.gateway_reference,
        "paymentUrl": txn.payment_url,
        "attempts": txn.attempts,
        "failureReason": txn.failure_reason,
        "refundedAmount": float(txn.refunded_amount or 0),
        "amountFlagged": bool(txn.amount_flagged),
        "createdAt": txn.created_at.isoformat() if txn.created_at else None,
        "updatedAt": txn.updated_at.isoformat() if txn.updated_at else None,
        "completedAt": txn.completed_at.isoformat() if txn.completed_at else None,
    }


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "currentPage": page,
        "totalPages": math.ceil(total / limit) if total else 0,
        "totalItems": total,
        "itemsPerPage": limit,
    }


class TransactionService:

    # ─── Initiation & submission ─────────────────────────────────────

    @staticmethod
    def initiate(
        db: Session,
        gateway: GatewayClient,
        user: CurrentUser,
        data: Dict[str, Any],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        course = CourseService.get_active_course(db, data["courseId"])
        if course is None:
            raise NotFound("Course not found or not available for purchase")

        config = ConfigService.get_snapshot(db)
        if not config.is_active:
            raise BusinessRuleViolation("Online payments are currently disabled")
        if data["paymentMethod"] not in config.enabled_payment_methods:
            raise BusinessRuleViolation(f"Payment method '{data['paymentMethod']}' is not enabled")

        # Coupons are priced by the course catalog; the code is only recorded for attribution
        amount = Decimal(course.price).quantize(Decimal("0.01"))
        if not (config.min_transaction_amount <= amount <= config.max_transaction_amount):
            raise BusinessRuleViolation(
                f"Amount must be between {config.min_transaction_amount} and {config.max_transaction_amount}"
            )

        txn = PaymentTransaction(
            transaction_id=generate_transaction_id(),
            course_id=course.id,
            user_id=user.id,
            amount=amount,
            currency=get_settings().CURRENCY,
            payment_method=data["paymentMethod"],
            discount_code=data.get("discountCode"),
            status=S.PENDING,
            attempts=0,
            refunded_amount=Decimal("0.00"),
            ip_address=ip_address,
            user_agent=(user_agent or "")[:256] or None,
        )
        db.add(txn)
        AuditService.log(
            db, txn.transaction_id, "PAYMENT_INITIATED",
            payload={"amount": str(amount), "courseId": course.id, "method": txn.payment_method},
            actor=user.id, ip_address=ip_address, user_agent=user_agent, commit=False,
        )
        db.commit()
        db.refresh(txn)

        with transaction_locks.hold(txn.transaction_id, blocking=False):
            TransactionService._submit(db, gateway, txn, user.id, product_info=course.title)

        result = serialize_transaction(txn)
        result["mode"] = data.get("mode", "checkout")
        return result

    @staticmethod
    def _submit(
        db: Session, gateway: GatewayClient, txn: PaymentTransaction, actor: str, product_info: str = "",
    ) -> None:
        """Send one attempt to the gateway. Caller holds the transaction lock."""
        txn.attempts = (txn.attempts or 0) + 1
        if txn.attempts > 1:
            txn.last_retry_at = datetime.utcnow()

        try:
            session = gateway.create_payment(txn.transaction_id, txn.amount, txn.payment_method, product_info)
        except GatewayTimeout as e:
            # The gateway may still have opened the session: stay in flight until it reports back
            txn.failure_reason = None
            transition(txn, S.PROCESSING)
            AuditService.log(
                db, txn.transaction_id, "PAYMENT_SUBMIT_TIMEOUT",
                payload={"attempt": txn.attempts}, actor=actor, commit=False,
            )
            commit_or_conflict(db)
            e.extra["transactionId"] = txn.transaction_id
            e.extra["status"] = txn.status
            raise
        except PaymentServiceError as e:
            txn.failure_reason = e.message[:256]
            transition(txn, S.FAILED)
            AuditService.log(
                db, txn.transaction_id, "PAYMENT_SUBMIT_FAILED",
                payload={"attempt": txn.attempts, "code": e.code, "reason": e.message},
                actor=actor, commit=False,
            )
            commit_or_conflict(db)
            NotificationService.payment_failed(txn.user_id, txn.transaction_id, txn.failure_reason)
            e.extra["transactionId"] = txn.transaction_id
            e.extra["status"] = txn.status
            raise

        txn.gateway_reference = session.session_id
        txn.payment_url = session.payment_url
        txn.failure_reason = None
        transition(txn, S.PROCESSING)
        AuditService.log(
            db, txn.transaction_id, "PAYMENT_SUBMITTED",
            payload={"attempt": txn.attempts, "reference": session.session_id},
            actor=actor, commit=False,
        )
        commit_or_conflict(db)
        db.refresh(txn)

    @staticmethod
    def retry(db: Session, gateway: GatewayClient, transaction_id: str, user: CurrentUser) -> Dict[str, Any]:
        with transaction_locks.hold(transaction_id, blocking=False):
            txn = load_transaction(db, transaction_id)
            if txn.user_id != user.id:
                raise ForbiddenError("You can only retry your own payments")
            if txn.status != S.FAILED:
                raise IllegalTransition(txn.status, S.PROCESSING)

            max_attempts = get_settings().MAX_PAYMENT_ATTEMPTS
            if txn.attempts >= max_attempts:
                raise BusinessRuleViolation(
                    "Maximum retry attempts reached. Please create a new payment.",
                    code="MAX_ATTEMPTS_EXCEEDED",
                )

            AuditService.log(
                db, txn.transaction_id, "PAYMENT_RETRIED",
                payload={"attempt": txn.attempts + 1}, actor=user.id, commit=False,
            )
            TransactionService._submit(db, gateway, txn, user.id)
            result = serialize_transaction(txn)
            result["attemptsRemaining"] = max(0, max_attempts - txn.attempts)
            return result

    # ─── Status & history ────────────────────────────────────────────

    @staticmethod
    def get_status(db: Session, gateway: GatewayClient, transaction_id: str, user: CurrentUser) -> Dict[str, Any]:
        txn = load_transaction(db, transaction_id)
        if txn.user_id != user.id and user.role not in FINANCE_ROLES:
            raise ForbiddenError("You do not have access to this transaction")

        if txn.status == S.PROCESSING:
            TransactionService._refresh_from_gateway(db, gateway, transaction_id)
            txn = load_transaction(db, transaction_id)
        return serialize_transaction(txn)

    @staticmethod
    def _refresh_from_gateway(db: Session, gateway: GatewayClient, transaction_id: str) -> None:
        """Best effort: ask the gateway where an in-flight payment stands."""
        try:
            with transaction_locks.hold(transaction_id, blocking=False):
                remote = gateway.query_status(transaction_id)
                if remote.status is None:
                    logger.warning("Gateway reported unknown status '%s' for %s", remote.raw_status, transaction_id)
                    return
                txn = load_transaction(db, transaction_id)
                TransactionService.apply_gateway_status(
                    db, txn, remote.status, claimed_amount=remote.amount, source="status_query",
                )
        except ConcurrencyConflict:
            logger.info("Skipping gateway re-query for %s: transaction busy", transaction_id)
        except PaymentServiceError as e:
            logger.warning("Gateway re-query for %s failed: %s", transaction_id, e.message)

    @staticmethod
    def history(
        db: Session, user_id: Optional[str], page: int, limit: int,
        status: Optional[str] = None, start: Optional[datetime] = None, end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query = db.query(PaymentTransaction)
        if user_id is not None:
            query = query.filter(PaymentTransaction.user_id == user_id)
        if status:
            query = query.filter(PaymentTransaction.status == status)
        if start:
            query = query.filter(PaymentTransaction.created_at >= start)
        if end:
            query = query.filter(PaymentTransaction.created_at <= end)

        total = query.count()
        rows = (
            query.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "transactions": [serialize_transaction(t) for t in rows],
            "pagination": pagination(page, limit, total),
        }

    # ─── Gateway-reported state ──────────────────────────────────────

    @staticmethod
    def apply_gateway_status(
        db: Session,
        txn: PaymentTransaction,
        target: str,
        claimed_amount: Optional[Decimal] = None,
        source: str = "webhook",
        failure_reason: Optional[str] = None,
    ) -> str:
        """Apply a state the gateway reports. Caller holds the transaction lock.

        Returns "applied", "duplicate" (already in that state) or "ignored" (illegal move).
        A claimed amount never overwrites `amount`; a disagreement only flags the row.
        """
        flagged = False
        # Refund events carry the refunded sum, not the charge
        if (
            claimed_amount is not None
            and target != S.REFUNDED
            and abs(Decimal(claimed_amount) - Decimal(txn.amount)) > AMOUNT_TOLERANCE
        ):
            txn.amount_flagged = True
            txn.claimed_amount = claimed_amount
            flagged = True
            logger.warning(
                "Amount mismatch on %s: ledger %s, %s claims %s",
                txn.transaction_id, txn.amount, source, claimed_amount,
            )
            AuditService.log(
                db, txn.transaction_id, "AMOUNT_FLAGGED",
                payload={"ledger": str(txn.amount), "claimed": str(claimed_amount), "source": source},
                actor="gateway", commit=False,
            )

        if txn.status == target:
            if flagged:
                commit_or_conflict(db)
            return "duplicate"
        if not can_transition(txn.status, target):
            logger.warning(
                "Ignoring illegal %s transition for %s: %s -> %s",
                source, txn.transaction_id, txn.status, target,
            )
            if flagged:
                commit_or_conflict(db)
            return "ignored"

        previous = txn.status
        transition(txn, target)
        if target == S.FAILED:
            txn.failure_reason = (failure_reason or "Declined by payment gateway")[:256]
        elif target == S.REFUNDED:
            # Refunded at the gateway side: the whole remaining balance went back
            txn.refunded_amount = txn.amount
            for row in db.query(PaymentRefund).filter(
                PaymentRefund.transaction_id == txn.transaction_id,
                PaymentRefund.status == RefundStatus.PENDING,
            ):
                row.status = RefundStatus.COMPLETED

        AuditService.log(
            db, txn.transaction_id, "STATUS_CHANGED",
            payload={"from": previous, "to": target, "source": source},
            actor="gateway", commit=False,
        )
        if target == S.SUCCESS:
            CourseService.activate_enrollment(db, txn.user_id, txn.course_id, txn.transaction_id)
        elif target == S.REFUNDED:
            CourseService.suspend_enrollment(db, txn.user_id, txn.course_id)
        commit_or_conflict(db)

        if target == S.SUCCESS:
            NotificationService.payment_confirmed(txn.user_id, txn.transaction_id, txn.amount, txn.course_id)
        elif target == S.FAILED:
            NotificationService.payment_failed(txn.user_id, txn.transaction_id, txn.failure_reason)
        return "applied"

    # ─── Refunds ─────────────────────────────────────────────────────

    @staticmethod
    def refund(
        db: Session,
        gateway: GatewayClient,
        data: Dict[str, Any],
        actor: CurrentUser,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Any]:
        if get_settings().REFUND_REQUIRE_2FA:
            code = data.get("twoFactorCode")
            if not code:
                raise ValidationFailed([{"field": "twoFactorCode", "message": "2FA code is required for refunds"}])
            if not two_factor.verify_code(actor.id, code):
                raise ForbiddenError("Invalid 2FA code", code="INVALID_2FA_CODE")

        transaction_id = data["transactionId"]
        amount: Decimal = data["amount"]

        with transaction_locks.hold(transaction_id, blocking=False):
            txn = load_transaction(db, transaction_id)
            if txn.status not in (S.SUCCESS, S.PARTIAL_REFUND):
                raise IllegalTransition(txn.status, S.REFUNDED)

            # An unconfirmed submission must be settled before another refund can start
            pending = pending_refund(db, txn.transaction_id)
            if pending is not None and Decimal(pending.amount) != amount:
                raise RefundPending(
                    f"A refund of {Decimal(pending.amount):.2f} is awaiting gateway confirmation; "
                    f"resubmit that amount to complete it",
                    extra={"refundKey": pending.refund_key, "pendingAmount": float(pending.amount)},
                )

            refunded_before = Decimal(txn.refunded_amount or 0)
            refunded_after = refunded_before + amount
            if refunded_after > Decimal(txn.amount):
                raise AmountInvariantViolation(
                    f"Refund amount exceeds the remaining balance of {txn.remaining_amount}",
                    extra={"remainingAmount": float(txn.remaining_amount)},
                )

            refund_key = pending.refund_key if pending is not None else next_refund_key(db, txn.transaction_id)
            try:
                refund_id = gateway.initiate_refund(
                    txn.transaction_id, txn.gateway_reference, amount, data["reason"], refund_key,
                )
            except GatewayUnavailable as e:
                # The gateway may have accepted it: keep the key so a resubmission is deduplicated
                if pending is None:
                    db.add(PaymentRefund(
                        transaction_id=txn.transaction_id,
                        refund_key=refund_key,
                        amount=amount,
                        reason=data["reason"],
                        status=RefundStatus.PENDING,
                        initiated_by=actor.id,
                    ))
                AuditService.log(
                    db, txn.transaction_id,
                    "REFUND_SUBMIT_TIMEOUT" if isinstance(e, GatewayTimeout) else "REFUND_SUBMIT_UNCONFIRMED",
                    payload={"amount": str(amount), "refundKey": refund_key, "code": e.code},
                    actor=actor.id, ip_address=ip_address, commit=False,
                )
                commit_or_conflict(db)
                e.extra.update({"transactionId": txn.transaction_id, "refundKey": refund_key, "status": "pending"})
                raise
            except GatewayRejected as e:
                if pending is not None:
                    pending.status = RefundStatus.FAILED
                AuditService.log(
                    db, txn.transaction_id, "REFUND_REJECTED",
                    payload={"amount": str(amount), "refundKey": refund_key, "reason": e.message},
                    actor=actor.id, ip_address=ip_address, commit=False,
                )
                commit_or_conflict(db)
                raise

            target = S.REFUNDED if refunded_after == Decimal(txn.amount) else S.PARTIAL_REFUND
            transition(txn, target)
            txn.refunded_amount = refunded_after
            txn.updated_at = datetime.utcnow()
            if pending is not None:
                pending.status = RefundStatus.COMPLETED
                pending.gateway_refund_id = refund_id
            else:
                db.add(PaymentRefund(
                    transaction_id=txn.transaction_id,
                    refund_key=refund_key,
                    amount=amount,
                    reason=data["reason"],
                    status=RefundStatus.COMPLETED,
                    gateway_refund_id=refund_id,
                    initiated_by=actor.id,
                ))
            if target == S.REFUNDED:
                CourseService.suspend_enrollment(db, txn.user_id, txn.course_id)
            AuditService.log(
                db, txn.transaction_id, "REFUND_PROCESSED",
                payload={
                    "amount": str(amount),
                    "refundedTotal": str(refunded_after),
                    "status": target,
                    "gatewayRefundId": refund_id,
                    "refundKey": refund_key,
                },
                actor=actor.id, ip_address=ip_address, commit=False,
            )
            commit_or_conflict(db)
            db.refresh(txn)

        NotificationService.refund_processed(txn.user_id, txn.transaction_id, amount, txn.remaining_amount)
        logger.info("Refund %s (%s) of %s on %s by %s", refund_id, refund_key, amount, txn.transaction_id, actor.id)
        return {
            "refundId": refund_id,
            "refundKey": refund_key,
            "transactionId": txn.transaction_id,
            "refundAmount": float(amount),
            "refundedAmount": float(txn.refunded_amount),
            "remainingAmount": float(txn.remaining_amount),
            "status": txn.status,
        }
