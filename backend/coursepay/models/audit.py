"""
Audit Log Model — Immutable, tamper-evident audit trail.
Every money-moving action and security event is SHA-256 hashed and timestamped.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON

from coursepay.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)

    # Chain key: a transaction id, a reconciliation report id, or "security"
    subject = Column(String(64), nullable=False, index=True)

    action = Column(String(50), nullable=False)
    # Actions: PAYMENT_INITIATED, PAYMENT_SUBMITTED, PAYMENT_RETRIED, STATUS_CHANGED,
    #          REFUND_PROCESSED, WEBHOOK_APPLIED, AMOUNT_FLAGGED, CONFIG_UPDATED,
    #          RECONCILIATION_STARTED, RECONCILIATION_COMPLETED, RECONCILIATION_FAILED,
    #          DISCREPANCY_RESOLVED, CSRF_REJECTED, WEBHOOK_SIGNATURE_INVALID, RATE_LIMITED

    actor = Column(String(64))              # user id, admin id, "gateway" or "system"

    payload_hash = Column(String(64))       # SHA-256 chain hash of the action payload
    previous_hash = Column(String(64))      # Hash chain for tamper detection

    ip_address = Column(String(45))
    user_agent = Column(String(256))

    log_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow)
