"""
Validators — Regex and rule-based validation for payment endpoints.

Every endpoint validator takes the raw (untrusted) payload and returns a
ValidationResult holding either the coerced data or a list of field errors.
Validators never raise on malformed input.
"""
import html
import re
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from coursepay.models.gateway_config import PAYMENT_METHOD_WHITELIST
from coursepay.models.transaction import TransactionStatus

TRANSACTION_ID_RE = re.compile(r"^TXN_[A-Z0-9_]{10,30}$")
DISCOUNT_CODE_RE = re.compile(r"^[A-Za-z0-9]{4,20}$")
COURSE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
REPORT_ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
TWO_FACTOR_RE = re.compile(r"^[0-9]{6}$")

_SCRIPT_BLOCK_RE = re.compile(r"<(script|style)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]*>")

PAYMENT_MODES = ("checkout", "elements")
TIME_RANGES = ("24h", "7d", "30d")
EXPORT_FORMATS = ("csv", "xlsx")
ENVIRONMENTS = ("sandbox", "production")

REFUND_MIN = Decimal("0.01")
REFUND_MAX = Decimal("500000")


@dataclass
class ValidationResult:
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def fail(self, field_name: str, message: str) -> None:
        self.errors.append({"field": field_name, "message": message})


# ─── Field-level checks ─────────────────────────────────────────────

def validate_transaction_id(value: Any) -> bool:
    """Accepts iff value is a string matching ^TXN_[A-Z0-9_]{10,30}$."""
    return isinstance(value, str) and TRANSACTION_ID_RE.fullmatch(value) is not None


def validate_two_factor_code(value: Any) -> bool:
    return isinstance(value, str) and TWO_FACTOR_RE.fullmatch(value.strip()) is not None


def sanitize_text(value: str) -> str:
    """Strip whitespace, drop script/style blocks and any HTML tags."""
    cleaned = _SCRIPT_BLOCK_RE.sub("", value.strip())
    cleaned = _TAG_RE.sub("", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def escape_text(value: str) -> str:
    return html.escape(value, quote=True)


def parse_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def parse_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and re.fullmatch(r"[+-]?\d+", value.strip()):
        return int(value.strip())
    return None


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 date or datetime. Timezone-aware values are normalized to naive UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(raw), datetime.min.time())
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _check_text(result: ValidationResult, raw: Dict, name: str, min_len: int, max_len: int, label: str) -> None:
    value = raw.get(name)
    if value is None or (isinstance(value, str) and not value.strip()):
        result.fail(name, f"{label} is required")
        return
    if not isinstance(value, str):
        result.fail(name, f"{label} must be a string")
        return
    cleaned = sanitize_text(value)
    if not (min_len <= len(cleaned) <= max_len):
        result.fail(name, f"{label} must be between {min_len} and {max_len} characters")
        return
    result.data[name] = escape_text(cleaned)


def _check_transaction_id(result: ValidationResult, raw: Dict, name: str = "transactionId") -> None:
    value = raw.get(name)
    if value is None or value == "":
        result.fail(name, "Transaction ID is required")
    elif not validate_transaction_id(value):
        result.fail(name, "Invalid transaction ID format. Expected format: TXN_XXXXXXXXXX")
    else:
        result.data[name] = value


def _check_pagination(result: ValidationResult, raw: Dict) -> None:
    page = raw.get("page", 1)
    limit = raw.get("limit", 10)

    page_int = parse_int(page)
    if page_int is None or page_int < 1:
        result.fail("page", "Page must be a positive integer")
    else:
        result.data["page"] = page_int

    limit_int = parse_int(limit)
    if limit_int is None or not (1 <= limit_int <= 100):
        result.fail("limit", "Limit must be between 1 and 100")
    else:
        result.data["limit"] = limit_int


def _check_status_filter(result: ValidationResult, raw: Dict) -> None:
    status = raw.get("status")
    if status in (None, ""):
        result.data["status"] = None
    elif status not in TransactionStatus.ALL:
        result.fail("status", "Invalid status value")
    else:
        result.data["status"] = status


# ─── Endpoint rule sets ─────────────────────────────────────────────

def validate_initiate_payment(raw: Any) -> ValidationResult:
    """POST /payment/initiate"""
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.fail("body", "Request body must be a JSON object")
        return result

    course_id = raw.get("courseId")
    if course_id in (None, ""):
        result.fail("courseId", "Course ID is required")
    elif not isinstance(course_id, str) or not COURSE_ID_RE.fullmatch(course_id):
        result.fail("courseId", "Invalid course ID format")
    else:
        result.data["courseId"] = course_id

    code = raw.get("discountCode")
    if code not in (None, ""):
        if not isinstance(code, str):
            result.fail("discountCode", "Discount code must be a string")
        elif not DISCOUNT_CODE_RE.fullmatch(code.strip()):
            result.fail("discountCode", "Discount code must be 4-20 letters and numbers")
        else:
            result.data["discountCode"] = code.strip().upper()
    else:
        result.data["discountCode"] = None

    mode = raw.get("mode", "checkout")
    if mode not in PAYMENT_MODES:
        result.fail("mode", "Invalid payment mode")
    else:
        result.data["mode"] = mode

    method = raw.get("paymentMethod", "credit_card")
    if method not in PAYMENT_METHOD_WHITELIST:
        result.fail("paymentMethod", "Invalid payment method")
    else:
        result.data["paymentMethod"] = method

    return result


def validate_transaction_path(raw: Any) -> ValidationResult:
    """GET /payment/status/{id}, POST /payment/retry/{id}"""
    result = ValidationResult()
    _check_transaction_id(result, raw if isinstance(raw, dict) else {})
    return result


def validate_history_query(raw: Any) -> ValidationResult:
    """GET /payment/history, GET /admin/payment/transactions"""
    result = ValidationResult()
    raw = raw if isinstance(raw, dict) else {}
    _check_pagination(result, raw)
    _check_status_filter(result, raw)
    return result


def validate_refund(raw: Any) -> ValidationResult:
    """POST /admin/payment/refund"""
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.fail("body", "Request body must be a JSON object")
        return result

    _check_transaction_id(result, raw)

    amount = raw.get("amount")
    if amount in (None, ""):
        result.fail("amount", "Refund amount is required")
    else:
        parsed = parse_decimal(amount)
        if parsed is None or not (REFUND_MIN <= parsed <= REFUND_MAX):
            result.fail("amount", "Refund amount must be between 0.01 and 500,000")
        elif parsed.as_tuple().exponent < -2:
            result.fail("amount", "Refund amount allows at most 2 decimal places")
        else:
            result.data["amount"] = parsed.quantize(Decimal("0.01"))

    _check_text(result, raw, "reason", 10, 500, "Refund reason")

    code = raw.get("twoFactorCode")
    if code in (None, ""):
        result.data["twoFactorCode"] = None
    elif not validate_two_factor_code(code):
        result.fail("twoFactorCode", "2FA code must be exactly 6 digits")
    else:
        result.data["twoFactorCode"] = code.strip()

    return result


def validate_gateway_config(raw: Any) -> ValidationResult:
    """PUT /admin/payment/config: partial update; only supplied keys are returned."""
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.fail("body", "Request body must be a JSON object")
        return result

    if "enabledPaymentMethods" in raw:
        methods = raw["enabledPaymentMethods"]
        if not isinstance(methods, list) or not methods:
            result.fail("enabledPaymentMethods", "Enabled payment methods must be a non-empty array")
        elif not all(m in PAYMENT_METHOD_WHITELIST for m in methods):
            result.fail("enabledPaymentMethods", "Invalid payment method in array")
        else:
            result.data["enabled_payment_methods"] = list(dict.fromkeys(methods))

    if "minTransactionAmount" in raw:
        parsed = parse_decimal(raw["minTransactionAmount"])
        if parsed is None or not (Decimal("1") <= parsed <= Decimal("100000")):
            result.fail("minTransactionAmount", "Minimum transaction amount must be between 1 and 100,000")
        else:
            result.data["min_transaction_amount"] = parsed.quantize(Decimal("0.01"))

    if "maxTransactionAmount" in raw:
        parsed = parse_decimal(raw["maxTransactionAmount"])
        if parsed is None or not (Decimal("100") <= parsed <= Decimal("1000000")):
            result.fail("maxTransactionAmount", "Maximum transaction amount must be between 100 and 1,000,000")
        else:
            result.data["max_transaction_amount"] = parsed.quantize(Decimal("0.01"))

    if "sessionTimeoutMinutes" in raw:
        parsed = parse_int(raw["sessionTimeoutMinutes"])
        if parsed is None or not (5 <= parsed <= 60):
            result.fail("sessionTimeoutMinutes", "Session timeout must be between 5 and 60 minutes")
        else:
            result.data["session_timeout_minutes"] = parsed

    if "environment" in raw:
        if raw["environment"] not in ENVIRONMENTS:
            result.fail("environment", "Environment must be sandbox or production")
        else:
            result.data["environment"] = raw["environment"]

    if "isActive" in raw:
        if not isinstance(raw["isActive"], bool):
            result.fail("isActive", "isActive must be a boolean")
        else:
            result.data["is_active"] = raw["isActive"]

    for key, column in (("merchantId", "merchant_id"), ("apiKey", "api_key"), ("apiSecret", "api_secret")):
        if key in raw:
            value = raw[key]
            if not isinstance(value, str) or not value.strip() or len(value) > 128:
                result.fail(key, f"{key} must be a non-empty string of at most 128 characters")
            else:
                result.data[column] = value.strip()

    return result


def check_amount_bounds(result: ValidationResult, min_amount: Decimal, max_amount: Decimal) -> None:
    """Cross-field rule, applied against the merged (current + update) config."""
    if min_amount >= max_amount:
        result.fail("maxTransactionAmount", "Maximum amount must be greater than minimum amount")


def validate_reconciliation_run(raw: Any) -> ValidationResult:
    """POST /admin/reconciliation/run"""
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.fail("body", "Request body must be a JSON object")
        return result

    start = parse_iso_datetime(raw.get("startDate"))
    end = parse_iso_datetime(raw.get("endDate"))
    if start is None:
        result.fail("startDate", "Start date must be in ISO 8601 format (YYYY-MM-DD)")
    if end is None:
        result.fail("endDate", "End date must be in ISO 8601 format (YYYY-MM-DD)")
    if start is not None and end is not None:
        # A bare end date covers the whole day
        if isinstance(raw.get("endDate"), str) and len(raw["endDate"].strip()) == 10:
            end = end.replace(hour=23, minute=59, second=59, microsecond=999999)
        if end < start:
            result.fail("endDate", "End date must be after start date")
        else:
            result.data["startDate"] = start
            result.data["endDate"] = end
    return result


def validate_resolve_discrepancy(raw: Any) -> ValidationResult:
    """POST /admin/reconciliation/resolve"""
    result = ValidationResult()
    if not isinstance(raw, dict):
        result.fail("body", "Request body must be a JSON object")
        return result

    report_id = raw.get("reportId")
    if report_id in (None, ""):
        result.fail("reportId", "Reconciliation report ID is required")
    elif not isinstance(report_id, str) or not REPORT_ID_RE.fullmatch(report_id):
        result.fail("reportId", "Invalid reconciliation report ID format")
    else:
        result.data["reportId"] = report_id

    # Gateway-only discrepancies carry the gateway's reference, not necessarily a TXN_ id
    txn = raw.get("transactionId")
    if txn in (None, ""):
        result.fail("transactionId", "Transaction ID is required")
    elif not isinstance(txn, str) or len(txn) > 64:
        result.fail("transactionId", "Invalid transaction ID format")
    else:
        result.data["transactionId"] = txn

    _check_text(result, raw, "notes", 10, 1000, "Resolution notes")
    return result


def validate_metrics_query(raw: Any) -> ValidationResult:
    """GET /admin/monitoring/metrics"""
    result = ValidationResult()
    raw = raw if isinstance(raw, dict) else {}
    time_range = raw.get("timeRange") or "24h"
    if time_range not in TIME_RANGES:
        result.fail("timeRange", "Time range must be one of: 24h, 7d, 30d")
    else:
        result.data["timeRange"] = time_range
    return result


def validate_export_query(raw: Any) -> ValidationResult:
    """GET /admin/reconciliation/{id}/export"""
    result = ValidationResult()
    raw = raw if isinstance(raw, dict) else {}
    fmt = (raw.get("format") or "csv").lower()
    if fmt not in EXPORT_FORMATS:
        result.fail("format", "Export format must be csv or xlsx")
    else:
        result.data["format"] = fmt
    return result
