"""
Monitoring Service — Payment metrics roll-up, dependency health and alerts.
"""
import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Any, List, Optional

from sqlalchemy.orm import Session

from coursepay.config import get_settings
from coursepay.database import ping_db
from coursepay.models.transaction import PaymentTransaction, TransactionStatus
from coursepay.services.gateway_service import GatewayClient
from coursepay.utils.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
_SEVERITY = {HEALTHY: 0, DEGRADED: 1, UNHEALTHY: 2}

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def worst(statuses: List[str]) -> str:
    return max(statuses, key=lambda s: _SEVERITY[s]) if statuses else HEALTHY


class MonitoringService:

    # ─── Health ──────────────────────────────────────────────────────

    @staticmethod
    def _probe(name: str, check: Callable[[], Optional[str]]) -> Dict[str, Any]:
        """Time one dependency check. `check` raises on failure, or returns a forced status."""
        settings = get_settings()
        started = time.monotonic()
        try:
            forced = check()
        except Exception as e:
            elapsed = (time.monotonic() - started) * 1000
            logger.warning("Health probe '%s' failed: %s", name, e)
            return {"status": UNHEALTHY, "responseTimeMs": round(elapsed, 2), "error": str(e)}

        elapsed = (time.monotonic() - started) * 1000
        status = forced or (DEGRADED if elapsed > settings.HEALTH_DEGRADED_MS else HEALTHY)
        return {"status": status, "responseTimeMs": round(elapsed, 2)}

    @staticmethod
    def health(gateway: GatewayClient, limiter: Optional[RateLimiter] = None) -> Dict[str, Any]:
        limiter = limiter or get_rate_limiter()

        def cache_check() -> Optional[str]:
            if limiter.store.name != "redis":
                # In-process counters are not shared between workers
                return DEGRADED
            limiter.store.ping()
            return None

        components = {
            "db": MonitoringService._probe("db", ping_db),
            "gateway": MonitoringService._probe("gateway", gateway.ping),
            "cache": MonitoringService._probe("cache", cache_check),
        }
        overall = worst([c["status"] for c in components.values()])
        result = {
            "overall": overall,
            "components": components,
            "checkedAt": datetime.utcnow().isoformat(),
        }
        result["alerts"] = MonitoringService.alerts(health=result)
        return result

    # ─── Metrics ─────────────────────────────────────────────────────

    @staticmethod
    def metrics(db: Session, time_range: str = "24h", now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        start = now - TIME_RANGES[time_range]
        transactions = (
            db.query(PaymentTransaction)
            .filter(PaymentTransaction.created_at >= start, PaymentTransaction.created_at <= now)
            .all()
        )

        total_attempts = len(transactions)
        successful = [t for t in transactions if t.status in TransactionStatus.SETTLED]
        failed = [t for t in transactions if t.status == TransactionStatus.FAILED]
        success_rate = (len(successful) / total_attempts) * 100 if total_attempts else 0.0

        durations = [
            (t.completed_at - t.created_at).total_seconds()
            for t in transactions
            if t.completed_at and t.created_at
        ]
        avg_processing = sum(durations) / len(durations) if durations else 0.0

        total_amount = sum((Decimal(t.amount) for t in successful), Decimal("0.00"))
        methods = Counter(t.payment_method or "unknown" for t in transactions)
        reasons = Counter(t.failure_reason or "other" for t in failed)

        result = {
            "timeRange": time_range,
            "startDate": start.isoformat(),
            "endDate": now.isoformat(),
            "totalAttempts": total_attempts,
            "successfulPayments": len(successful),
            "failedPayments": len(failed),
            "successRate": round(success_rate, 2),
            "averageProcessingTime": round(avg_processing, 2),
            "totalAmount": float(total_amount),
            "paymentMethodDistribution": dict(methods),
            "failureReasons": [
                {
                    "reason": reason,
                    "count": count,
                    "percentage": round(count / total_attempts * 100, 2),
                }
                for reason, count in reasons.most_common(5)
            ],
        }
        result["alerts"] = MonitoringService.alerts(metrics=result)
        return result

    # ─── Alerts ──────────────────────────────────────────────────────

    @staticmethod
    def alerts(metrics: Optional[Dict[str, Any]] = None, health: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        settings = get_settings()
        found: List[Dict[str, Any]] = []

        if metrics is not None:
            threshold = settings.ALERT_SUCCESS_RATE_THRESHOLD
            if metrics["totalAttempts"] > 0 and metrics["successRate"] < threshold:
                found.append({
                    "type": "low_success_rate",
                    "severity": "critical",
                    "message": f"Success rate ({metrics['successRate']}%) is below threshold ({threshold}%)",
                    "value": metrics["successRate"],
                    "threshold": threshold,
                })
            limit = settings.ALERT_PROCESSING_TIME_SECONDS
            if metrics["averageProcessingTime"] > limit:
                found.append({
                    "type": "slow_processing",
                    "severity": "warning",
                    "message": (
                        f"Average processing time ({metrics['averageProcessingTime']}s) "
                        f"exceeds threshold ({limit}s)"
                    ),
                    "value": metrics["averageProcessingTime"],
                    "threshold": limit,
                })

        if health is not None:
            for name, component in health["components"].items():
                if component["status"] != HEALTHY:
                    found.append({
                        "type": "component_unhealthy" if component["status"] == UNHEALTHY else "component_degraded",
                        "severity": "critical" if component["status"] == UNHEALTHY else "warning",
                        "message": f"{name} is {component['status']}",
                        "component": name,
                    })

        for alert in found:
            logger.warning("ALERT %s: %s", alert["type"], alert["message"])
        return found
