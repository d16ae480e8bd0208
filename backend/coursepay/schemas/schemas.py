"""
Pydantic Schemas — Response models for the payment API.

Request bodies are validated by coursepay.utils.validators so that every rule
failure is reported in one VALIDATION_ERROR response after auth, throttling and
CSRF have run.
"""
from typing import Optional, Dict, List, Any
from pydantic import BaseModel, Field


# ──────────────── Shared ────────────────

class Pagination(BaseModel):
    currentPage: int
    totalPages: int
    totalItems: int
    itemsPerPage: int


class TransactionOut(BaseModel):
    transactionId: str
    courseId: str
    userId: str
    amount: float
    currency: str
    paymentMethod: str
    discountCode: Optional[str] = None
    status: str
    gatewayReference: Optional[str] = None
    paymentUrl: Optional[str] = None
    attempts: int
    failureReason: Optional[str] = None
    refundedAmount: float = 0.0
    amountFlagged: bool = False
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    completedAt: Optional[str] = None


# ──────────────── Payment ────────────────

class CsrfTokenResponse(BaseModel):
    success: bool = True
    csrfToken: str


class PaymentInitiateResponse(BaseModel):
    success: bool = True
    message: str = "Payment initiated"
    mode: str = "checkout"
    transaction: TransactionOut


class TransactionStatusResponse(BaseModel):
    success: bool = True
    transaction: TransactionOut


class PaymentRetryResponse(BaseModel):
    success: bool = True
    message: str = "Payment retry initiated"
    attemptsRemaining: int
    transaction: TransactionOut


class TransactionListResponse(BaseModel):
    success: bool = True
    transactions: List[TransactionOut]
    pagination: Pagination


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    transactionId: Optional[str] = None


# ──────────────── Admin ────────────────

class RefundResponse(BaseModel):
    success: bool = True
    message: str = "Refund processed successfully"
    refundId: str
    refundKey: str
    transactionId: str
    refundAmount: float
    refundedAmount: float
    remainingAmount: float
    status: str


class GatewayConfigOut(BaseModel):
    merchantId: str
    apiKey: str = Field(..., description="Masked")
    apiSecret: str = Field(..., description="Masked")
    enabledPaymentMethods: List[str]
    minTransactionAmount: float
    maxTransactionAmount: float
    sessionTimeoutMinutes: int
    environment: str
    isActive: bool
    updatedAt: Optional[str] = None
    lastModifiedBy: Optional[str] = None


class GatewayConfigResponse(BaseModel):
    success: bool = True
    config: GatewayConfigOut


class SessionSweepResponse(BaseModel):
    success: bool = True
    checked: int
    expired: int
    confirmed: int
    skipped: int


class AuditVerifyResponse(BaseModel):
    success: bool = True
    subject: str
    valid: bool
    total_entries: int
    broken_at: Optional[int] = None
    message: Optional[str] = None


# ──────────────── Reconciliation ────────────────

class ReconciliationSummary(BaseModel):
    totalTransactions: int
    matchedTransactions: int
    unmatchedTransactions: int
    totalAmount: float
    settledAmount: float
    pendingAmount: float


class DiscrepancyOut(BaseModel):
    transactionId: str
    type: str
    systemAmount: Optional[float] = None
    gatewayAmount: Optional[float] = None
    systemStatus: Optional[str] = None
    gatewayStatus: Optional[str] = None
    description: Optional[str] = None
    resolved: bool
    notes: Optional[str] = None
    resolvedAt: Optional[str] = None
    resolvedBy: Optional[str] = None


class ReportOut(BaseModel):
    reportId: str
    periodStart: str
    periodEnd: str
    runStatus: str
    failureReason: Optional[str] = None
    performedBy: Optional[str] = None
    createdAt: Optional[str] = None
    generatedAt: Optional[str] = None
    summary: ReconciliationSummary
    discrepancies: Optional[List[DiscrepancyOut]] = None


class ReconciliationRunResponse(BaseModel):
    success: bool = True
    message: str = "Reconciliation started"
    reportId: str
    runStatus: str


class ReportResponse(BaseModel):
    success: bool = True
    report: ReportOut


class ReportListResponse(BaseModel):
    success: bool = True
    reports: List[ReportOut]
    pagination: Pagination


class ResolveResponse(BaseModel):
    success: bool = True
    message: str = "Discrepancy resolved"
    discrepancy: DiscrepancyOut


# ──────────────── Monitoring ────────────────

class ComponentHealth(BaseModel):
    status: str
    responseTimeMs: float
    error: Optional[str] = None


class HealthResponse(BaseModel):
    success: bool = True
    overall: str
    components: Dict[str, ComponentHealth]
    checkedAt: str
    alerts: List[Dict[str, Any]] = []


class MetricsResponse(BaseModel):
    success: bool = True
    timeRange: str
    startDate: str
    endDate: str
    totalAttempts: int
    successfulPayments: int
    failedPayments: int
    successRate: float
    averageProcessingTime: float
    totalAmount: float
    paymentMethodDistribution: Dict[str, int]
    failureReasons: List[Dict[str, Any]]
    alerts: List[Dict[str, Any]] = []
