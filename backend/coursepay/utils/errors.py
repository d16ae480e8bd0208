"""
Error Taxonomy — Typed failures with a stable machine-readable code.
Rendered by a single exception handler in main.py.
"""
from typing import Optional, Dict, List


class PaymentServiceError(Exception):
    """Base for every failure that is surfaced to a client."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, extra: Optional[Dict] = None):
        self.message = message or self.message
        if code:
            self.code = code
        self.extra = extra or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict:
        body = {"success": False, "code": self.code, "message": self.message}
        body.update(self.extra)
        return body


class ValidationFailed(PaymentServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"

    def __init__(self, errors: List[Dict[str, str]], message: Optional[str] = None):
        super().__init__(message, extra={"errors": errors})
        self.errors = errors


class AuthError(PaymentServiceError):
    status_code = 401
    code = "NOT_AUTHENTICATED"
    message = "Not authorized"


class ForbiddenError(AuthError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Insufficient permissions"


class RateLimitExceeded(PaymentServiceError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message, extra={"retryAfter": retry_after})
        self.retry_after = retry_after


class CsrfFailure(PaymentServiceError):
    status_code = 403
    code = "CSRF_VALIDATION_FAILED"
    message = "Invalid or missing CSRF token. Please refresh the page and try again."


class InvalidSignature(PaymentServiceError):
    status_code = 401
    code = "INVALID_SIGNATURE"
    message = "Invalid gateway signature"


class NotFound(PaymentServiceError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found"


class BusinessRuleViolation(PaymentServiceError):
    status_code = 400
    code = "BUSINESS_RULE_VIOLATION"


class AmountInvariantViolation(PaymentServiceError):
    status_code = 400
    code = "AMOUNT_INVARIANT_VIOLATION"
    message = "Refund exceeds the remaining refundable balance"


class IllegalTransition(PaymentServiceError):
    status_code = 409
    code = "INVALID_STATE"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Transaction cannot move from '{current}' to '{target}'",
            extra={"currentStatus": current},
        )
        self.current = current
        self.target = target


class ConcurrencyConflict(PaymentServiceError):
    status_code = 409
    code = "CONCURRENCY_CONFLICT"
    message = "Another operation on this transaction is in progress. Re-fetch its status and try again."


class RefundPending(PaymentServiceError):
    status_code = 409
    code = "REFUND_PENDING"
    message = "An earlier refund on this transaction is awaiting gateway confirmation"


class AlreadyResolved(PaymentServiceError):
    status_code = 409
    code = "ALREADY_RESOLVED"
    message = "This discrepancy has already been resolved"


class ReportNotReady(PaymentServiceError):
    status_code = 409
    code = "REPORT_NOT_READY"
    message = "Reconciliation report is not completed"


class GatewayUnavailable(PaymentServiceError):
    status_code = 503
    code = "GATEWAY_UNAVAILABLE"
    message = "Payment gateway is temporarily unavailable"


class GatewayTimeout(GatewayUnavailable):
    code = "GATEWAY_TIMEOUT"
    message = "Payment gateway did not respond in time"


class GatewayRejected(PaymentServiceError):
    """Gateway answered but declined the request."""
    status_code = 502
    code = "GATEWAY_REJECTED"
    message = "Payment gateway rejected the request"


class ReconciliationRunFailure(PaymentServiceError):
    code = "RECONCILIATION_FAILED"
    message = "Reconciliation run failed"
