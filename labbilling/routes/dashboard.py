"""
API routes backing the dashboard widgets.
"""
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, get_organization_id, raise_http_error
from labbilling.schemas.billing_schema import AgingBucket, DashboardStat, StatusCount, TopClient
from labbilling.services.dashboard_service import DashboardService


router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

RangeParam = Literal["7days", "30days", "90days", "ytd"]


def get_dashboard_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
) -> DashboardService:
    return DashboardService(client, organization_id)


@router.get("/stats", response_model=List[DashboardStat])
def dashboard_stats(date_range: RangeParam = "30days", service: DashboardService = Depends(get_dashboard_service)):
    try:
        return service.get_dashboard_stats(date_range)
    except Exception as exc:
        raise_http_error(exc, "Get dashboard stats")


@router.get("/aging", response_model=List[AgingBucket])
def aging_overview(service: DashboardService = Depends(get_dashboard_service)):
    try:
        return service.get_aging_overview()
    except Exception as exc:
        raise_http_error(exc, "Get aging overview")


@router.get("/status-distribution", response_model=List[StatusCount])
def status_distribution(date_range: RangeParam = "30days", service: DashboardService = Depends(get_dashboard_service)):
    try:
        return service.get_status_distribution(date_range)
    except Exception as exc:
        raise_http_error(exc, "Get status distribution")


@router.get("/top-clients", response_model=List[TopClient])
def top_clients(
    date_range: RangeParam = "30days",
    limit: int = 5,
    service: DashboardService = Depends(get_dashboard_service),
):
    try:
        return service.get_top_clients(date_range, limit)
    except Exception as exc:
        raise_http_error(exc, "Get top clients")
