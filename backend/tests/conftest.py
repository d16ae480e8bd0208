"""Pytest configuration for the coursepay backend.

The environment is prepared before any coursepay module is imported: settings
and the SQLAlchemy engine are created at import time.
"""
import os
import sys
import tempfile
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import pytest

# Make `coursepay` importable without installation
backend_path = Path(__file__).parent.parent
if str(backend_path) not in sys.path:
    sys.path.insert(0, str(backend_path))

_TMP_DIR = tempfile.mkdtemp(prefix="coursepay-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/test.db"
os.environ["LOG_DIR"] = os.path.join(_TMP_DIR, "logs")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["GATEWAY_MERCHANT_ID"] = "TEST_MERCHANT"
os.environ["GATEWAY_API_KEY"] = "test-api-key"
os.environ["GATEWAY_API_SECRET"] = "test-gateway-secret"
os.environ["REDIS_URL"] = ""
os.environ["DEBUG"] = "false"
os.environ["REFUND_REQUIRE_2FA"] = "true"
os.environ["CLIENT_URL"] = "http://localhost:5173"
os.environ["SCHEDULER_ENABLED"] = "false"

from fastapi.testclient import TestClient  # noqa: E402

from coursepay.database import Base, SessionLocal, engine  # noqa: E402
from coursepay.main import app  # noqa: E402
from coursepay.models import Course, PaymentTransaction, TransactionStatus  # noqa: E402
from coursepay.services.config_service import ConfigService  # noqa: E402
from coursepay.services.gateway_service import CheckoutSession, GatewayStatus, SettlementRecord  # noqa: E402
from coursepay.utils.auth import create_access_token  # noqa: E402
from coursepay.utils.guards import get_gateway  # noqa: E402
from coursepay.utils.hashing import hmac_sha256  # noqa: E402
from coursepay.utils.rate_limiter import get_rate_limiter  # noqa: E402

GATEWAY_SECRET = "test-gateway-secret"


class FakeGateway:
    """In-memory stand-in for GatewayClient with scriptable failures."""

    is_mock = False

    def __init__(self):
        self.create_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.settlement_error: Optional[Exception] = None
        self.ping_error: Optional[Exception] = None
        self.remote_status = GatewayStatus(status=TransactionStatus.PROCESSING, raw_status="pending")
        self.settlements: List[SettlementRecord] = []
        self.created: List[str] = []
        self.refunds: List[tuple] = []
        self.refund_keys: List[str] = []

    def create_payment(self, transaction_id, amount, payment_method, product_info=""):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(transaction_id)
        return CheckoutSession(
            payment_url=f"https://gateway.test/pay/{transaction_id}",
            session_id=f"SES_{transaction_id}",
        )

    def query_status(self, transaction_id):
        return self.remote_status

    def initiate_refund(self, transaction_id, gateway_reference, amount, reason, refund_key=None):
        self.refund_keys.append(refund_key)
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append((transaction_id, Decimal(amount)))
        return f"RFD_{len(self.refunds)}"

    def fetch_settlement_report(self, start, end):
        if self.settlement_error is not None:
            raise self.settlement_error
        return list(self.settlements)

    def ping(self):
        if self.ping_error is not None:
            raise self.ping_error


@pytest.fixture(autouse=True)
def fresh_state():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    ConfigService.invalidate()
    get_rate_limiter().reset()
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    # https so the Secure CSRF cookie is sent back
    with TestClient(app, base_url="https://testserver") as test_client:
        yield test_client


@pytest.fixture
def course(db):
    item = Course(id="COURSE_101", title="Python for Data Analysis", price=Decimal("1000.00"), is_active=True)
    db.add(item)
    db.commit()
    return item


def auth_headers(user_id: str = "student-1", role: str = "user") -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


def csrf_headers(client: TestClient, user_id: str = "student-1", role: str = "user") -> dict:
    response = client.get("/api/payment/csrf-token")
    assert response.status_code == 200
    return {**auth_headers(user_id, role), "X-CSRF-Token": response.json()["csrfToken"]}


def sign_body(body: bytes) -> str:
    return hmac_sha256(GATEWAY_SECRET, body)


def make_transaction(
    db,
    transaction_id: str = "TXN_TEST0000000001",
    status: str = TransactionStatus.SUCCESS,
    amount: str = "1000.00",
    user_id: str = "student-1",
    course_id: str = "COURSE_101",
    created_at: Optional[datetime] = None,
    **fields,
) -> PaymentTransaction:
    txn = PaymentTransaction(
        transaction_id=transaction_id,
        course_id=course_id,
        user_id=user_id,
        amount=Decimal(amount),
        currency="INR",
        payment_method=fields.pop("payment_method", "upi"),
        status=status,
        attempts=fields.pop("attempts", 1),
        refunded_amount=Decimal(fields.pop("refunded_amount", "0.00")),
        gateway_reference=fields.pop("gateway_reference", f"SES_{transaction_id}"),
        created_at=created_at or datetime.utcnow(),
        **fields,
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return txn
