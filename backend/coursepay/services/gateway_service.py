"""
Gateway Service — HTTP client for the hosted payment gateway.

Opens checkout sessions, queries transaction status, issues refunds and pulls
settlement reports for reconciliation. Every outbound call is signed with
HMAC-SHA256 and bounded by GATEWAY_TIMEOUT_SECONDS.

Amounts cross the wire in major currency units as two-decimal strings
("1000.50"), in both directions: checkout and refund requests, status answers,
settlement rows and webhook payloads.

Without merchant credentials the client runs in mock mode: checkout sessions are
synthesized locally, status queries report "processing" and settlement reports
are empty.
"""
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any, Tuple

import httpx

from coursepay.config import get_settings
from coursepay.models.transaction import TransactionStatus
from coursepay.utils.errors import GatewayUnavailable, GatewayTimeout, GatewayRejected
from coursepay.utils.hashing import canonical_json, hmac_sha256

logger = logging.getLogger(__name__)

# Gateway vocabulary → ledger statuses
STATUS_MAP = {
    "success": TransactionStatus.SUCCESS,
    "completed": TransactionStatus.SUCCESS,
    "settled": TransactionStatus.SUCCESS,
    "captured": TransactionStatus.SUCCESS,
    "failed": TransactionStatus.FAILED,
    "declined": TransactionStatus.FAILED,
    "rejected": TransactionStatus.FAILED,
    "pending": TransactionStatus.PROCESSING,
    "processing": TransactionStatus.PROCESSING,
    "refunded": TransactionStatus.REFUNDED,
    "reversed": TransactionStatus.REFUNDED,
}


def normalize_gateway_status(raw: Any) -> Optional[str]:
    """Map a gateway status string to a ledger status, or None when unknown."""
    if not isinstance(raw, str):
        return None
    return STATUS_MAP.get(raw.strip().lower())


def to_amount(raw: Any) -> Optional[Decimal]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return value.quantize(Decimal("0.01")) if value.is_finite() else None


def format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """ISO-8601 date-time as naive UTC. Date-only values carry no time of day and give None."""
    if not isinstance(raw, str) or len(raw.strip()) <= 10:
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class CheckoutSession:
    payment_url: str
    session_id: str


@dataclass(frozen=True)
class GatewayStatus:
    status: Optional[str]       # normalized; None if the gateway sent something unknown
    raw_status: str
    amount: Optional[Decimal] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class SettlementRecord:
    reference: str
    amount: Decimal
    status: Optional[str]
    raw_status: str = ""
    occurred_at: Optional[datetime] = None  # transaction time when the gateway reports one


class GatewayClient:
    """Synchronous gateway client (route handlers run on the threadpool)."""

    def __init__(
        self,
        merchant_id: str = "",
        api_key: str = "",
        api_secret: str = "",
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        settings = get_settings()
        self.merchant_id = merchant_id
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = (base_url or settings.GATEWAY_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self.return_url = f"{settings.CLIENT_URL.rstrip('/')}/api/payment/callback"
        self.currency = settings.CURRENCY
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        if self.is_mock:
            logger.warning("Gateway credentials missing; gateway client running in mock mode")

    @property
    def is_mock(self) -> bool:
        return not self.merchant_id or not self.api_secret

    # ─── Signing ─────────────────────────────────────────────────────

    def sign(self, payload: Dict[str, Any]) -> str:
        return hmac_sha256(self.api_secret, canonical_json(payload))


    def _headers(self, payload: Optional[Dict[str, Any]] = None, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"X-Gateway-Key": self.api_key, "X-Merchant-Id": self.merchant_id}
        if payload is not None:
            headers["X-Gateway-Signature"] = self.sign(payload)
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self, method: str, path: str, payload: Optional[Dict[str, Any]] = None, idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        try:
            if payload is None:
                response = self._client.request(method, path, headers=self._headers())
            else:
                body = canonical_json(payload)
                response = self._client.request(
                    method, path, content=body, headers=self._headers(payload, idempotency_key),
                )
        except httpx.TimeoutException as e:
            logger.error("Gateway %s %s timed out after %.1fs", method, path, time.monotonic() - started)
            raise GatewayTimeout() from e
        except httpx.TransportError as e:
            logger.error("Gateway %s %s unreachable: %s", method, path, e)
            raise GatewayUnavailable() from e

        logger.info(
            "Gateway %s %s -> %s (%.0fms)",
            method, path, response.status_code, (time.monotonic() - started) * 1000,
        )
        if response.status_code >= 500:
            raise GatewayUnavailable(f"Payment gateway error ({response.status_code})")
        try:
            data = response.json() if response.content else {}
        except ValueError as e:
            raise GatewayUnavailable("Payment gateway returned a malformed response") from e
        if response.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise GatewayRejected(message or f"Payment gateway rejected the request ({response.status_code})")
        return data if isinstance(data, dict) else {"data": data}

    # ─── Operations ──────────────────────────────────────────────────

    def create_payment(
        self, transaction_id: str, amount: Decimal, payment_method: str, product_info: str = "",
    ) -> CheckoutSession:
        if self.is_mock:
            logger.info("Mocking checkout session for %s", transaction_id)
            return CheckoutSession(
                payment_url=f"{self.base_url.replace('/api/v1', '')}/pay?session=mock_{transaction_id}",
                session_id=f"MOCK_SES_{secrets.token_hex(6).upper()}",
            )

        payload = {
            "merchant_id": self.merchant_id,
            "order_id": transaction_id,
            "amount": format_amount(amount),
            "currency": self.currency,
            "payment_method": payment_method,
            "product_info": product_info or "Course enrollment",
            "return_url": self.return_url,
            "timestamp": datetime.utcnow().isoformat(),
        }
        data = self._request("POST", "/checkout/session", payload)
        if not data.get("payment_url") or not data.get("session_id"):
            raise GatewayRejected(data.get("message") or "Payment gateway did not open a checkout session")
        return CheckoutSession(payment_url=data["payment_url"], session_id=str(data["session_id"]))

    def query_status(self, transaction_id: str) -> GatewayStatus:
        if self.is_mock:
            return GatewayStatus(status=TransactionStatus.PROCESSING, raw_status="pending")

        data = self._request("GET", f"/transactions/{transaction_id}")
        raw = str(data.get("status", ""))
        return GatewayStatus(
            status=normalize_gateway_status(raw),
            raw_status=raw,
            amount=to_amount(data.get("amount")),
            reference=data.get("session_id") or data.get("reference"),
        )

    def initiate_refund(
        self,
        transaction_id: str,
        gateway_reference: Optional[str],
        amount: Decimal,
        reason: str,
        refund_key: Optional[str] = None,
    ) -> str:
        """Returns the gateway's refund id.

        `refund_key` identifies the submission: the gateway answers a repeated key
        with the original refund instead of paying out again.
        """
        if self.is_mock:
            return f"MOCK_RFD_{secrets.token_hex(6).upper()}"

        payload = {
            "merchant_id": self.merchant_id,
            "order_id": transaction_id,
            "reference": gateway_reference,
            "refund_key": refund_key,
            "amount": format_amount(amount),
            "reason": reason,
            "timestamp": datetime.utcnow().isoformat(),
        }
        data = self._request("POST", "/refunds", payload, idempotency_key=refund_key)
        refund_id = data.get("refund_id")
        if not refund_id:
            raise GatewayRejected(data.get("message") or "Payment gateway did not accept the refund")
        return str(refund_id)

    def fetch_settlement_report(self, start: datetime, end: datetime) -> List[SettlementRecord]:
        """Settlements for transactions made in [start, end]; full timestamps go to the gateway."""
        if self.is_mock:
            logger.info("Mocking settlement report for %s - %s", start.isoformat(), end.isoformat())
            return []

        payload = {
            "merchant_id": self.merchant_id,
            "start_date": start.date().isoformat(),
            "end_date": end.date().isoformat(),
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
            "timestamp": datetime.utcnow().isoformat(),
        }
        data = self._request("POST", "/reports/settlements", payload)
        records = []
        for item in data.get("settlements") or []:
            reference = item.get("transactionId") or item.get("orderId") or item.get("order_id")
            amount = to_amount(item.get("amount"))
            if not reference or amount is None:
                logger.warning("Skipping malformed settlement record: %s", item)
                continue
            occurred_at = parse_timestamp(
                item.get("transactionTime") or item.get("transaction_time")
                or item.get("createdAt") or item.get("created_at")
            )
            raw = str(item.get("status", ""))
            records.append(SettlementRecord(
                reference=str(reference), amount=amount,
                status=normalize_gateway_status(raw), raw_status=raw,
                occurred_at=occurred_at,
            ))
        return records

    def ping(self) -> None:
        """Raise GatewayUnavailable if the gateway cannot be reached."""
        if self.is_mock:
            return
        self._request("GET", "/health")

    def close(self) -> None:
        self._client.close()


class GatewayClientCache:
    """Holds the pooled client for the current credential set.

    A new credential set replaces the client and closes the one it replaces.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._key: Optional[Tuple[str, ...]] = None
        self._client: Optional[GatewayClient] = None

    def get(self, merchant_id: str, api_key: str, api_secret: str, base_url: str, timeout: float) -> GatewayClient:
        key = (merchant_id, api_key, api_secret, base_url, str(timeout))
        with self._lock:
            if self._client is not None and self._key == key:
                return self._client
            previous = self._client
            self._client = GatewayClient(merchant_id, api_key, api_secret, base_url, timeout)
            self._key = key
        if previous is not None:
            previous.close()
            logger.info("Gateway credentials changed; previous client closed")
        return self._client

    def close(self) -> None:
        with self._lock:
            client, self._client, self._key = self._client, None, None
        if client is not None:
            client.close()


gateway_clients = GatewayClientCache()


def build_gateway_client(merchant_id: str, api_key: str, api_secret: str) -> GatewayClient:
    """One pooled client per credential set; a config change yields a fresh client."""
    settings = get_settings()
    return gateway_clients.get(
        merchant_id or "", api_key or "", api_secret or "",
        settings.GATEWAY_BASE_URL, settings.GATEWAY_TIMEOUT_SECONDS,
    )
