"""
Audit Service — Manages the immutable, hash-chained audit trail.

Entries are chained per subject (a transaction id, a reconciliation report id,
or "security" for rejected requests), so each chain can be verified on its own.
"""
import logging
from datetime import datetime
from typing import Optional, Dict

from fastapi import Request
from sqlalchemy.orm import Session

from coursepay.models.audit import AuditLog
from coursepay.utils.hashing import generate_chain_hash
from coursepay.utils.logger import get_security_logger

logger = logging.getLogger(__name__)
security_log = get_security_logger()

SECURITY_SUBJECT = "security"


class AuditService:
    """Creates tamper-evident audit log entries with hash chaining."""

    @staticmethod
    def log(
        db: Session,
        subject: str,
        action: str,
        payload: Optional[Dict] = None,
        actor: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        commit: bool = True,
    ) -> AuditLog:
        """Append an entry to the subject's chain.

        Args:
            db: Database session.
            subject: Chain key this action belongs to.
            action: Action identifier (e.g. PAYMENT_INITIATED, REFUND_PROCESSED).
            payload: Data payload to hash; stored alongside so the chain can be recomputed.
            actor: Who performed the action.
            ip_address: Client IP.
            user_agent: Client user agent.
            commit: When False the entry is only flushed, and becomes durable with
                the caller's own commit (state change and audit entry land together).

        Returns:
            The created AuditLog entry.
        """
        # Get the hash of the last entry for this subject (chain linking)
        last_entry = (
            db.query(AuditLog)
            .filter(AuditLog.subject == subject)
            .order_by(AuditLog.id.desc())
            .first()
        )
        previous_hash = last_entry.payload_hash if last_entry else ""

        payload_data = payload or {}
        chain_hash = generate_chain_hash(payload_data, previous_hash)

        entry = AuditLog(
            subject=subject,
            action=action,
            actor=actor,
            payload_hash=chain_hash,
            previous_hash=previous_hash,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:256] or None,
            log_metadata={"payload": payload_data},
            timestamp=datetime.utcnow(),
        )

        db.add(entry)
        if commit:
            db.commit()
            db.refresh(entry)
        else:
            db.flush()

        return entry

    @staticmethod
    def security_event(
        db: Session,
        action: str,
        request: Optional[Request] = None,
        details: Optional[Dict] = None,
        actor: Optional[str] = None,
    ) -> None:
        """Record a rejected request on the security logger and the "security" chain."""
        ip = request.client.host if request is not None and request.client else None
        path = request.url.path if request is not None else None
        user_agent = request.headers.get("user-agent") if request is not None else None
        security_log.warning("%s ip=%s path=%s details=%s", action, ip or "-", path or "-", details or {})
        try:
            AuditService.log(
                db,
                SECURITY_SUBJECT,
                action,
                payload={"path": path, **(details or {})},
                actor=actor,
                ip_address=ip,
                user_agent=user_agent,
            )
        except Exception as e:
            # The request is rejected either way; a failed audit write must not mask that
            db.rollback()
            logger.error("Failed to persist security event %s: %s", action, e)

    @staticmethod
    def get_trail(db: Session, subject: str) -> list[AuditLog]:
        """Get the full audit trail for a subject, ordered chronologically."""
        return (
            db.query(AuditLog)
            .filter(AuditLog.subject == subject)
            .order_by(AuditLog.id.asc())
            .all()
        )

    @staticmethod
    def verify_chain(db: Session, subject: str) -> dict:
        """Verify the integrity of the audit chain for a subject.

        Both the links (previous_hash) and each entry's own hash are recomputed.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = AuditService.get_trail(db, subject)

        if not entries:
            return {"valid": True, "total_entries": 0, "broken_at": None}

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].payload_hash if i > 0 else ""
            payload = (entry.log_metadata or {}).get("payload", {})
            if (
                entry.previous_hash != expected_prev
                or entry.payload_hash != generate_chain_hash(payload, expected_prev)
            ):
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.action})",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
