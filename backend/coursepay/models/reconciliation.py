"""
Reconciliation Models — Ledger vs. gateway settlement comparison runs.
A report is immutable once completed; only its discrepancies can be resolved.
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Column, String, Integer, DateTime, Numeric, Boolean, ForeignKey, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from coursepay.database import Base


class RunStatus:
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DiscrepancyType:
    AMOUNT_MISMATCH = "amount_mismatch"
    MISSING_IN_SYSTEM = "missing_in_system"
    MISSING_IN_GATEWAY = "missing_in_gateway"


class ReconciliationReport(Base):
    __tablename__ = "reconciliation_reports"

    id = Column(String(36), primary_key=True, index=True)  # uuid4

    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    run_status = Column(String(16), default=RunStatus.RUNNING, nullable=False)
    failure_reason = Column(String(512))
    performed_by = Column(String(64))

    # Summary
    total_transactions = Column(Integer, default=0)
    matched_transactions = Column(Integer, default=0)
    unmatched_transactions = Column(Integer, default=0)
    total_amount = Column(Numeric(14, 2), default=Decimal("0.00"))
    settled_amount = Column(Numeric(14, 2), default=Decimal("0.00"))
    pending_amount = Column(Numeric(14, 2), default=Decimal("0.00"))

    created_at = Column(DateTime, default=datetime.utcnow)
    generated_at = Column(DateTime, nullable=True)

    discrepancies = relationship(
        "Discrepancy",
        back_populates="report",
        order_by="Discrepancy.id",
        cascade="all, delete-orphan",
    )


class Discrepancy(Base):
    __tablename__ = "reconciliation_discrepancies"
    __table_args__ = (UniqueConstraint("report_id", "transaction_id", name="uq_discrepancy_report_txn"),)

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    report_id = Column(String(36), ForeignKey("reconciliation_reports.id"), nullable=False, index=True)
    transaction_id = Column(String(64), nullable=False, index=True)

    type = Column(String(24), nullable=False)
    system_amount = Column(Numeric(12, 2), nullable=True)
    gateway_amount = Column(Numeric(12, 2), nullable=True)
    system_status = Column(String(16))
    gateway_status = Column(String(16))
    description = Column(String(512))

    # Resolution (append-only once resolved)
    resolved = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(64), nullable=True)

    report = relationship("ReconciliationReport", back_populates="discrepancies")
