"""
Monitoring Routes — Dependency health and payment metrics for administrators.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from coursepay.database import get_db
from coursepay.schemas.schemas import HealthResponse, MetricsResponse
from coursepay.services.gateway_service import GatewayClient
from coursepay.services.monitoring_service import MonitoringService
from coursepay.utils.auth import CurrentUser, require_admin
from coursepay.utils.guards import rate_limit, validated, get_gateway
from coursepay.utils.validators import validate_metrics_query

router = APIRouter(prefix="/api/admin/monitoring", tags=["Monitoring"])


@router.get("/health", response_model=HealthResponse)
def monitoring_health(
    user: CurrentUser = Depends(rate_limit("monitoring", auth=require_admin)),
    gateway: GatewayClient = Depends(get_gateway),
):
    return {"success": True, **MonitoringService.health(gateway)}


@router.get("/metrics", response_model=MetricsResponse)
def monitoring_metrics(
    request: Request,
    user: CurrentUser = Depends(rate_limit("monitoring", auth=require_admin)),
    db: Session = Depends(get_db),
):
    query = validated(validate_metrics_query(dict(request.query_params)))
    return {"success": True, **MonitoringService.metrics(db, query["timeRange"])}
