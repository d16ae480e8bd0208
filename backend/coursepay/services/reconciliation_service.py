"""
Reconciliation Service — Compares the local ledger with gateway settlement records.

A run is persisted as "running", executed in a background task with its own DB
session, and finishes as "completed" (with discrepancies) or "failed" (with the
reason). A failed gateway fetch never produces a clean-looking report.
"""
import csv
import io
import logging
import math
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session

from coursepay.database import SessionLocal
from coursepay.models.reconciliation import ReconciliationReport, Discrepancy, RunStatus, DiscrepancyType
from coursepay.models.transaction import PaymentTransaction, TransactionStatus
from coursepay.services.audit_service import AuditService
from coursepay.services.gateway_service import GatewayClient, SettlementRecord
from coursepay.services.notification_service import NotificationService
from coursepay.utils.errors import NotFound, AlreadyResolved, ReportNotReady, PaymentServiceError

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")
ZERO = Decimal("0.00")

CSV_MEDIA_TYPE = "text/csv"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

DISCREPANCY_COLUMNS = [
    "Transaction ID", "Type", "System Amount", "Gateway Amount", "System Status",
    "Gateway Status", "Description", "Resolved", "Resolved By", "Resolved At", "Notes",
]


def _money(value) -> Optional[float]:
    return None if value is None else float(value)


def within_period(records: List[SettlementRecord], start: datetime, end: datetime) -> List[SettlementRecord]:
    """Drop settlement rows whose transaction time falls outside the run period.

    Rows without a time of day are kept.
    """
    kept = [r for r in records if r.occurred_at is None or start <= r.occurred_at <= end]
    if len(kept) != len(records):
        logger.info("Ignored %d settlement records outside %s - %s", len(records) - len(kept), start, end)
    return kept


def reconcile(
    local: List[PaymentTransaction], remote: List[SettlementRecord],
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """Index-join both sides in one pass.

    Returns (summary, discrepancies). Local rows that never moved money
    (pending / processing / failed) and are absent at the gateway count as matched,
    and their amount is pending. Several settlement rows for one reference are
    summed, so a double charge shows up as an amount mismatch.
    """
    index: Dict[str, SettlementRecord] = {}
    row_counts: Dict[str, int] = {}
    for record in remote:
        seen = index.get(record.reference)
        row_counts[record.reference] = row_counts.get(record.reference, 0) + 1
        if seen is None:
            index[record.reference] = record
        else:
            index[record.reference] = replace(seen, amount=seen.amount + record.amount)
    duplicated = {reference: n for reference, n in row_counts.items() if n > 1}
    if duplicated:
        logger.warning("Gateway settlement report repeats references: %s", duplicated)

    def rows_note(reference: str) -> str:
        n = duplicated.get(reference)
        return f" across {n} settlement records" if n else ""

    matched = 0
    total_amount = ZERO
    settled_amount = ZERO
    discrepancies: List[Dict[str, Any]] = []

    for txn in local:
        amount = Decimal(txn.amount)
        total_amount += amount
        record = index.pop(txn.transaction_id, None)
        if record is None and txn.gateway_reference:
            record = index.pop(txn.gateway_reference, None)

        if record is None:
            if txn.status in TransactionStatus.SETTLED:
                discrepancies.append({
                    "transaction_id": txn.transaction_id,
                    "type": DiscrepancyType.MISSING_IN_GATEWAY,
                    "system_amount": amount,
                    "gateway_amount": None,
                    "system_status": txn.status,
                    "gateway_status": None,
                    "description": (
                        f"Transaction {txn.transaction_id} is '{txn.status}' in the ledger "
                        f"but missing from the gateway settlement report"
                    ),
                })
            else:
                matched += 1
            continue

        if abs(amount - record.amount) > AMOUNT_TOLERANCE:
            description = (
                f"Amount mismatch: system {amount:.2f}, gateway {record.amount:.2f}{rows_note(record.reference)}"
            )
            if txn.amount_flagged and txn.claimed_amount is not None:
                description += f" (webhook claimed {Decimal(txn.claimed_amount):.2f})"
            discrepancies.append({
                "transaction_id": txn.transaction_id,
                "type": DiscrepancyType.AMOUNT_MISMATCH,
                "system_amount": amount,
                "gateway_amount": record.amount,
                "system_status": txn.status,
                "gateway_status": record.status or record.raw_status,
                "description": description,
            })
            continue

        matched += 1
        if txn.status in TransactionStatus.SETTLED:
            settled_amount += amount

    for reference, record in index.items():
        total_amount += record.amount
        discrepancies.append({
            "transaction_id": reference,
            "type": DiscrepancyType.MISSING_IN_SYSTEM,
            "system_amount": None,
            "gateway_amount": record.amount,
            "system_status": None,
            "gateway_status": record.status or record.raw_status,
            "description": (
                f"Transaction {reference} found in the gateway report{rows_note(reference)} "
                f"but missing from the ledger"
            ),
        })

    summary = {
        "total_transactions": matched + len(discrepancies),
        "matched_transactions": matched,
        "unmatched_transactions": len(discrepancies),
        "total_amount": total_amount,
        "settled_amount": settled_amount,
        "pending_amount": total_amount - settled_amount,
    }
    return summary, discrepancies


def serialize_discrepancy(d: Discrepancy) -> Dict[str, Any]:
    return {
        "transactionId": d.transaction_id,
        "type": d.type,
        "systemAmount": _money(d.system_amount),
        "gatewayAmount": _money(d.gateway_amount),
        "systemStatus": d.system_status,
        "gatewayStatus": d.gateway_status,
        "description": d.description,
        "resolved": bool(d.resolved),
        "notes": d.notes,
        "resolvedAt": d.resolved_at.isoformat() if d.resolved_at else None,
        "resolvedBy": d.resolved_by,
    }


def serialize_report(report: ReconciliationReport, include_discrepancies: bool = True) -> Dict[str, Any]:
    data = {
        "reportId": report.id,
        "periodStart": report.period_start.isoformat(),
        "periodEnd": report.period_end.isoformat(),
        "runStatus": report.run_status,
        "failureReason": report.failure_reason,
        "performedBy": report.performed_by,
        "createdAt": report.created_at.isoformat() if report.created_at else None,
        "generatedAt": report.generated_at.isoformat() if report.generated_at else None,
        "summary": {
            "totalTransactions": report.total_transactions or 0,
            "matchedTransactions": report.matched_transactions or 0,
            "unmatchedTransactions": report.unmatched_transactions or 0,
            "totalAmount": _money(report.total_amount or ZERO),
            "settledAmount": _money(report.settled_amount or ZERO),
            "pendingAmount": _money(report.pending_amount or ZERO),
        },
    }
    if include_discrepancies:
        data["discrepancies"] = [serialize_discrepancy(d) for d in report.discrepancies]
    return data


class ReconciliationService:

    @staticmethod
    def start(db: Session, start: datetime, end: datetime, actor: str) -> ReconciliationReport:
        report = ReconciliationReport(
            id=str(uuid.uuid4()),
            period_start=start,
            period_end=end,
            run_status=RunStatus.RUNNING,
            performed_by=actor,
        )
        db.add(report)
        AuditService.log(
            db, report.id, "RECONCILIATION_STARTED",
            payload={"start": start.isoformat(), "end": end.isoformat()},
            actor=actor, commit=False,
        )
        db.commit()
        db.refresh(report)
        logger.info("Reconciliation %s queued by %s for %s - %s", report.id, actor, start, end)
        return report

    @staticmethod
    def execute(db: Session, report_id: str, gateway: GatewayClient) -> ReconciliationReport:
        report = db.query(ReconciliationReport).filter(ReconciliationReport.id == report_id).first()
        if report is None:
            raise NotFound("Reconciliation report not found")

        try:
            local = (
                db.query(PaymentTransaction)
                .filter(
                    PaymentTransaction.created_at >= report.period_start,
                    PaymentTransaction.created_at <= report.period_end,
                )
                .order_by(PaymentTransaction.id.asc())
                .all()
            )
            remote = within_period(
                gateway.fetch_settlement_report(report.period_start, report.period_end),
                report.period_start, report.period_end,
            )
            summary, discrepancies = reconcile(local, remote)
        except PaymentServiceError as e:
            return ReconciliationService._fail(db, report, e.message)
        except Exception as e:
            logger.exception("Reconciliation %s crashed", report_id)
            return ReconciliationService._fail(db, report, f"Unexpected error: {e}")

        for column, value in summary.items():
            setattr(report, column, value)
        report.discrepancies = [Discrepancy(**d) for d in discrepancies]
        report.run_status = RunStatus.COMPLETED
        report.generated_at = datetime.utcnow()
        AuditService.log(
            db, report.id, "RECONCILIATION_COMPLETED",
            payload={
                "matched": summary["matched_transactions"],
                "unmatched": summary["unmatched_transactions"],
                "totalAmount": str(summary["total_amount"]),
            },
            actor="system", commit=False,
        )
        db.commit()
        db.refresh(report)

        logger.info(
            "Reconciliation %s completed: %d matched, %d unmatched",
            report.id, report.matched_transactions, report.unmatched_transactions,
        )
        if report.unmatched_transactions:
            NotificationService.reconciliation_alert(report.performed_by, report.id, report.unmatched_transactions)
        return report

    @staticmethod
    def _fail(db: Session, report: ReconciliationReport, reason: str) -> ReconciliationReport:
        db.rollback()
        report.run_status = RunStatus.FAILED
        report.failure_reason = reason[:512]
        report.generated_at = datetime.utcnow()
        AuditService.log(
            db, report.id, "RECONCILIATION_FAILED", payload={"reason": reason}, actor="system", commit=False,
        )
        db.commit()
        db.refresh(report)
        logger.error("Reconciliation %s failed: %s", report.id, reason)
        return report

    @staticmethod
    def run_in_background(report_id: str, gateway: GatewayClient) -> None:
        """BackgroundTasks entry point: owns its session."""
        db = SessionLocal()
        try:
            ReconciliationService.execute(db, report_id, gateway)
        finally:
            db.close()

    # ─── Reads ───────────────────────────────────────────────────────

    @staticmethod
    def get_report(db: Session, report_id: str) -> ReconciliationReport:
        report = db.query(ReconciliationReport).filter(ReconciliationReport.id == report_id).first()
        if report is None:
            raise NotFound("Reconciliation report not found")
        return report

    @staticmethod
    def list_reports(db: Session, page: int, limit: int) -> Dict[str, Any]:
        query = db.query(ReconciliationReport)
        total = query.count()
        rows = (
            query.order_by(ReconciliationReport.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "reports": [serialize_report(r, include_discrepancies=False) for r in rows],
            "pagination": {
                "currentPage": page,
                "totalPages": math.ceil(total / limit) if total else 0,
                "totalItems": total,
                "itemsPerPage": limit,
            },
        }

    # ─── Resolution ──────────────────────────────────────────────────

    @staticmethod
    def resolve(db: Session, report_id: str, transaction_id: str, notes: str, actor: str) -> Discrepancy:
        ReconciliationService.get_report(db, report_id)
        discrepancy = (
            db.query(Discrepancy)
            .filter(Discrepancy.report_id == report_id, Discrepancy.transaction_id == transaction_id)
            .first()
        )
        if discrepancy is None:
            raise NotFound("Discrepancy not found in this report")
        if discrepancy.resolved:
            raise AlreadyResolved()

        discrepancy.resolved = True
        discrepancy.notes = notes
        discrepancy.resolved_at = datetime.utcnow()
        discrepancy.resolved_by = actor
        AuditService.log(
            db, report_id, "DISCREPANCY_RESOLVED",
            payload={"transactionId": transaction_id, "notes": notes},
            actor=actor, commit=False,
        )
        db.commit()
        db.refresh(discrepancy)
        logger.info("Discrepancy %s/%s resolved by %s", report_id, transaction_id, actor)
        return discrepancy

    # ─── Export ──────────────────────────────────────────────────────

    @staticmethod
    def _summary_rows(report: ReconciliationReport) -> List[List[Any]]:
        return [
            ["Report ID", report.id],
            ["Period Start", report.period_start.isoformat()],
            ["Period End", report.period_end.isoformat()],
            ["Generated At", report.generated_at.isoformat() if report.generated_at else ""],
            ["Performed By", report.performed_by or ""],
            ["Total Transactions", report.total_transactions],
            ["Matched Transactions", report.matched_transactions],
            ["Unmatched Transactions", report.unmatched_transactions],
            ["Total Amount", f"{Decimal(report.total_amount):.2f}"],
            ["Settled Amount", f"{Decimal(report.settled_amount):.2f}"],
            ["Pending Amount", f"{Decimal(report.pending_amount):.2f}"],
        ]

    @staticmethod
    def _discrepancy_rows(report: ReconciliationReport) -> List[List[Any]]:
        return [
            [
                d.transaction_id,
                d.type,
                "" if d.system_amount is None else f"{Decimal(d.system_amount):.2f}",
                "" if d.gateway_amount is None else f"{Decimal(d.gateway_amount):.2f}",
                d.system_status or "",
                d.gateway_status or "",
                d.description or "",
                "yes" if d.resolved else "no",
                d.resolved_by or "",
                d.resolved_at.isoformat() if d.resolved_at else "",
                d.notes or "",
            ]
            for d in report.discrepancies
        ]

    @staticmethod
    def export(db: Session, report_id: str, fmt: str) -> Tuple[bytes, str, str]:
        """Returns (content, media_type, filename)."""
        report = ReconciliationService.get_report(db, report_id)
        if report.run_status != RunStatus.COMPLETED:
            raise ReportNotReady()

        stamp = report.period_start.strftime("%Y%m%d")
        filename = f"reconciliation_{stamp}_{report.id[:8]}.{fmt}"
        summary = ReconciliationService._summary_rows(report)
        rows = ReconciliationService._discrepancy_rows(report)

        if fmt == "xlsx":
            wb = openpyxl.Workbook()
            ws = wb.active
            ws.title = "Summary"
            for row in summary:
                ws.append(row)
            for cell in ws["A"]:
                cell.font = Font(bold=True)

            ds = wb.create_sheet("Discrepancies")
            ds.append(DISCREPANCY_COLUMNS)
            for col_idx in range(1, len(DISCREPANCY_COLUMNS) + 1):
                ds.cell(row=1, column=col_idx).font = Font(bold=True)
            for row in rows:
                ds.append(row)
            for col_idx, header in enumerate(DISCREPANCY_COLUMNS, start=1):
                width = max([len(str(header))] + [len(str(r[col_idx - 1])) for r in rows])
                ds.column_dimensions[get_column_letter(col_idx)].width = max(12, min(width + 2, 80))

            buffer = io.BytesIO()
            wb.save(buffer)
            return buffer.getvalue(), XLSX_MEDIA_TYPE, filename

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerows(summary)
        writer.writerow([])
        writer.writerow(DISCREPANCY_COLUMNS)
        writer.writerows(rows)
        return buffer.getvalue().encode("utf-8"), CSV_MEDIA_TYPE, filename
