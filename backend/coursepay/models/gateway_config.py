"""
Gateway Configuration Model — Merchant credentials and payment limits.
Singleton per merchant; written only by admins.
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Column, String, Integer, DateTime, JSON, Boolean, Numeric

from coursepay.database import Base

PAYMENT_METHOD_WHITELIST = ("credit_card", "debit_card", "net_banking", "upi", "wallet")


class GatewayConfig(Base):
    __tablename__ = "gateway_configs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    merchant_id = Column(String(64), unique=True, nullable=False)

    api_key = Column(String(128))
    api_secret = Column(String(128))

    enabled_payment_methods = Column(JSON, default=lambda: list(PAYMENT_METHOD_WHITELIST))
    min_transaction_amount = Column(Numeric(12, 2), default=Decimal("1.00"))
    max_transaction_amount = Column(Numeric(12, 2), default=Decimal("500000.00"))
    session_timeout_minutes = Column(Integer, default=15)

    environment = Column(String(16), default="sandbox")  # sandbox | production
    is_active = Column(Boolean, default=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_modified_by = Column(String(64))
