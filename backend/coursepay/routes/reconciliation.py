"""
Reconciliation Routes — Run, inspect, resolve and export ledger/gateway comparisons.
"""
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Request, Response
from sqlalchemy.orm import Session

from coursepay.database import get_db
from coursepay.schemas.schemas import (
    ReconciliationRunResponse, ReportResponse, ReportListResponse, ResolveResponse,
)
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.reconciliation_service import (
    ReconciliationService, serialize_report, serialize_discrepancy,
)
from coursepay.utils.auth import CurrentUser, require_finance
from coursepay.utils.guards import rate_limit, by_global_reconciliation, validated, get_gateway
from coursepay.utils.validators import (
    validate_reconciliation_run, validate_resolve_discrepancy, validate_export_query, validate_history_query,
)

router = APIRouter(prefix="/api/admin/reconciliation", tags=["Reconciliation"])


@router.post("/run", response_model=ReconciliationRunResponse, status_code=202)
def run_reconciliation(
    background_tasks: BackgroundTasks,
    payload: Any = Body(None),
    user: CurrentUser = Depends(rate_limit("reconciliation-run", by_global_reconciliation, auth=require_finance)),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Queue a run for the period; poll GET /{reportId} for the result."""
    data = validated(validate_reconciliation_run(payload))
    report = ReconciliationService.start(db, data["startDate"], data["endDate"], user.id)
    background_tasks.add_task(ReconciliationService.run_in_background, report.id, gateway)
    return {"success": True, "reportId": report.id, "runStatus": report.run_status}


@router.get("", response_model=ReportListResponse)
def list_reports(
    request: Request,
    user: CurrentUser = Depends(rate_limit("config", auth=require_finance)),
    db: Session = Depends(get_db),
):
    query = validated(validate_history_query({
        k: v for k, v in request.query_params.items() if k in ("page", "limit")
    }))
    return {"success": True, **ReconciliationService.list_reports(db, query["page"], query["limit"])}


@router.post("/resolve", response_model=ResolveResponse)
def resolve_discrepancy(
    payload: Any = Body(None),
    user: CurrentUser = Depends(require_finance),
    db: Session = Depends(get_db),
):
    """Close one discrepancy with mandatory notes. Resolution is final."""
    data = validated(validate_resolve_discrepancy(payload))
    discrepancy = ReconciliationService.resolve(
        db, data["reportId"], data["transactionId"], data["notes"], user.id,
    )
    return {"success": True, "discrepancy": serialize_discrepancy(discrepancy)}


@router.get("/{report_id}", response_model=ReportResponse)
def get_report(
    report_id: str,
    user: CurrentUser = Depends(require_finance),
    db: Session = Depends(get_db),
):
    return {"success": True, "report": serialize_report(ReconciliationService.get_report(db, report_id))}


@router.get("/{report_id}/export")
def export_report(
    report_id: str,
    request: Request,
    user: CurrentUser = Depends(require_finance),
    db: Session = Depends(get_db),
):
    """Download a completed report as CSV or XLSX (?format=csv|xlsx)."""
    query = validated(validate_export_query(dict(request.query_params)))
    content, media_type, filename = ReconciliationService.export(db, report_id, query["format"])
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
