"""
Config Service — Gateway configuration with an immutable in-memory snapshot.

Reads are served from a frozen snapshot; an admin update is validated, merged
with the current row, committed, and only then swapped in under a lock. The
first read seeds the row from environment settings.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Dict, Any

from sqlalchemy.orm import Session

from coursepay.config import get_settings
from coursepay.models.gateway_config import GatewayConfig, PAYMENT_METHOD_WHITELIST
from coursepay.services.audit_service import AuditService
from coursepay.services.gateway_service import GatewayClient, build_gateway_client
from coursepay.utils.errors import ValidationFailed
from coursepay.utils.validators import ValidationResult, check_amount_bounds

logger = logging.getLogger(__name__)

DEFAULT_MERCHANT_ID = "MOCK_MERCHANT"


@dataclass(frozen=True)
class GatewayConfigSnapshot:
    merchant_id: str
    api_key: str
    api_secret: str
    enabled_payment_methods: Tuple[str, ...]
    min_transaction_amount: Decimal
    max_transaction_amount: Decimal
    session_timeout_minutes: int
    environment: str
    is_active: bool
    updated_at: Optional[datetime]
    last_modified_by: Optional[str]

    @classmethod
    def from_row(cls, row: GatewayConfig) -> "GatewayConfigSnapshot":
        return cls(
            merchant_id=row.merchant_id,
            api_key=row.api_key or "",
            api_secret=row.api_secret or "",
            enabled_payment_methods=tuple(row.enabled_payment_methods or ()),
            min_transaction_amount=Decimal(row.min_transaction_amount),
            max_transaction_amount=Decimal(row.max_transaction_amount),
            session_timeout_minutes=row.session_timeout_minutes,
            environment=row.environment,
            is_active=bool(row.is_active),
            updated_at=row.updated_at,
            last_modified_by=row.last_modified_by,
        )


def mask_secret(value: str) -> str:
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return f"****{value[-4:]}"


class ConfigService:
    _lock = threading.Lock()
    _snapshot: Optional[GatewayConfigSnapshot] = None

    @classmethod
    def _load_row(cls, db: Session) -> GatewayConfig:
        row = db.query(GatewayConfig).order_by(GatewayConfig.id.asc()).first()
        if row is None:
            settings = get_settings()
            row = GatewayConfig(
                merchant_id=settings.GATEWAY_MERCHANT_ID or DEFAULT_MERCHANT_ID,
                api_key=settings.GATEWAY_API_KEY,
                api_secret=settings.GATEWAY_API_SECRET,
                enabled_payment_methods=list(PAYMENT_METHOD_WHITELIST),
                min_transaction_amount=Decimal("1.00"),
                max_transaction_amount=Decimal("500000.00"),
                session_timeout_minutes=15,
                environment=settings.GATEWAY_ENVIRONMENT,
                is_active=True,
                last_modified_by="system",
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info("Seeded gateway configuration for merchant %s", row.merchant_id)
        return row

    @classmethod
    def get_snapshot(cls, db: Session) -> GatewayConfigSnapshot:
        snapshot = cls._snapshot
        if snapshot is not None:
            return snapshot
        with cls._lock:
            if cls._snapshot is None:
                cls._snapshot = GatewayConfigSnapshot.from_row(cls._load_row(db))
            return cls._snapshot

    @classmethod
    def invalidate(cls) -> None:
        with cls._lock:
            cls._snapshot = None

    @classmethod
    def gateway_client(cls, db: Session) -> GatewayClient:
        snapshot = cls.get_snapshot(db)
        # Mock mode credentials never reach the wire, so the placeholder merchant id counts as none
        merchant = "" if snapshot.merchant_id == DEFAULT_MERCHANT_ID else snapshot.merchant_id
        return build_gateway_client(merchant, snapshot.api_key, snapshot.api_secret)

    @classmethod
    def update(
        cls,
        db: Session,
        changes: Dict[str, Any],
        actor: str,
        ip_address: Optional[str] = None,
    ) -> GatewayConfigSnapshot:
        """Apply a validated partial update. `changes` uses column names."""
        with cls._lock:
            row = cls._load_row(db)
            new_min = changes.get("min_transaction_amount", Decimal(row.min_transaction_amount))
            new_max = changes.get("max_transaction_amount", Decimal(row.max_transaction_amount))
            cross = ValidationResult()
            check_amount_bounds(cross, new_min, new_max)
            if not cross.ok:
                raise ValidationFailed(cross.errors)

            for column, value in changes.items():
                setattr(row, column, value)
            row.last_modified_by = actor
            row.updated_at = datetime.utcnow()

            AuditService.log(
                db,
                f"config:{row.merchant_id}",
                "CONFIG_UPDATED",
                payload={
                    "fields": sorted(changes.keys()),
                    # Secrets are recorded by presence only
                    "values": {k: str(v) for k, v in changes.items() if k not in ("api_key", "api_secret")},
                },
                actor=actor,
                ip_address=ip_address,
                commit=False,
            )
            db.commit()
            db.refresh(row)
            cls._snapshot = GatewayConfigSnapshot.from_row(row)
            logger.info("Gateway configuration updated by %s: %s", actor, sorted(changes.keys()))
            return cls._snapshot

    @staticmethod
    def to_public(snapshot: GatewayConfigSnapshot) -> Dict[str, Any]:
        return {
            "merchantId": snapshot.merchant_id,
            "apiKey": mask_secret(snapshot.api_key),
            "apiSecret": mask_secret(snapshot.api_secret),
            "enabledPaymentMethods": list(snapshot.enabled_payment_methods),
            "minTransactionAmount": float(snapshot.min_transaction_amount),
            "maxTransactionAmount": float(snapshot.max_transaction_amount),
            "sessionTimeoutMinutes": snapshot.session_timeout_minutes,
            "environment": snapshot.environment,
            "isActive": snapshot.is_active,
            "updatedAt": snapshot.updated_at.isoformat() if snapshot.updated_at else None,
            "lastModifiedBy": snapshot.last_modified_by,
        }
