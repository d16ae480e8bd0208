"""
Payment Transaction Models — The local ledger of course payments.
Tracks every gateway submission, refund and webhook delivery for a transaction.
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, DateTime, Numeric, Boolean, ForeignKey, JSON,
)

from coursepay.database import Base


class TransactionStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL_REFUND = "partial_refund"
    REFUNDED = "refunded"

    ALL = (PENDING, PROCESSING, SUCCESS, FAILED, PARTIAL_REFUND, REFUNDED)

    # Statuses in which the ledger believes money actually moved
    SETTLED = (SUCCESS, PARTIAL_REFUND, REFUNDED)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    transaction_id = Column(String(34), unique=True, nullable=False, index=True)

    course_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="INR")
    payment_method = Column(String(16), nullable=False)  # credit_card | debit_card | net_banking | upi | wallet
    discount_code = Column(String(20), nullable=True)

    # Status tracking
    status = Column(String(16), default=TransactionStatus.PENDING, nullable=False, index=True)
    gateway_reference = Column(String(64), index=True)
    payment_url = Column(String(512))
    attempts = Column(Integer, default=0, nullable=False)
    failure_reason = Column(String(256))

    refunded_amount = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    amount_flagged = Column(Boolean, default=False, nullable=False)  # webhook claimed a different amount
    claimed_amount = Column(Numeric(12, 2), nullable=True)

    ip_address = Column(String(45))
    user_agent = Column(String(256))

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    last_retry_at = Column(DateTime, nullable=True)

    # Optimistic concurrency: every UPDATE checks and bumps this counter
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_amount(self) -> Decimal:
        return Decimal(self.amount) - Decimal(self.refunded_amount or 0)


class RefundStatus:
    PENDING = "pending"        # sent, gateway outcome unknown
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentRefund(Base):
    """One refund submission against a transaction.

    Completed rows sum to the transaction's refunded_amount. A pending row holds
    the idempotency key that a resubmission must reuse, so the gateway can tell a
    retry from a second refund.
    """
    __tablename__ = "payment_refunds"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    transaction_id = Column(String(34), ForeignKey("payment_transactions.transaction_id"), nullable=False, index=True)
    refund_key = Column(String(48), unique=True, nullable=False)  # {transaction_id}-R{sequence}

    amount = Column(Numeric(12, 2), nullable=False)
    reason = Column(String(512), nullable=False)
    status = Column(String(16), default=RefundStatus.COMPLETED, nullable=False, index=True)
    gateway_refund_id = Column(String(64))
    initiated_by = Column(String(64), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class WebhookEvent(Base):
    """Idempotency ledger for gateway deliveries (webhooks and browser callbacks)."""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    event_id = Column(String(128), unique=True, nullable=False, index=True)

    transaction_id = Column(String(34), index=True)
    event_type = Column(String(64))
    target_status = Column(String(16))
    claimed_amount = Column(Numeric(12, 2), nullable=True)
    outcome = Column(String(16), nullable=False)  # applied | duplicate | ignored

    payload = Column(JSON, default=dict)
    received_at = Column(DateTime, default=datetime.utcnow)
