"""
API routes for dispute tickets raised against invoices and line items.
"""
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, raise_http_error, require_organization_id
from labbilling.schemas.dispute_schema import (
    BulkDisputeRequest,
    BulkDisputeResult,
    Dispute,
    DisputeAssignment,
    DisputeCreate,
    DisputeFilters,
    DisputeMessage,
    DisputeMessageCreate,
    DisputePage,
    DisputePriority,
    DisputeStats,
    DisputeStatus,
    DisputeStatusUpdate,
)
from labbilling.services.dispute_service import DisputeService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/disputes", tags=["disputes"])


def get_dispute_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: str = Depends(require_organization_id),
) -> DisputeService:
    return DisputeService(client, organization_id)


@router.get("", response_model=DisputePage)
def list_disputes(
    status_filter: Optional[DisputeStatus] = Query(None, alias="status"),
    priority: Optional[DisputePriority] = None,
    client_id: Optional[str] = None,
    assigned_to: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    service: DisputeService = Depends(get_dispute_service),
):
    try:
        filters = DisputeFilters(
            status=status_filter,
            priority=priority,
            client_id=client_id,
            assigned_to=assigned_to,
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return service.get_disputes(filters)
    except Exception as exc:
        raise_http_error(exc, "List disputes")


@router.post("", response_model=Dispute, status_code=status.HTTP_201_CREATED)
def create_dispute(data: DisputeCreate, service: DisputeService = Depends(get_dispute_service)):
    """
    Open a dispute ticket. A line-item dispute also flags the item.
    """
    try:
        return service.create_dispute(data)
    except Exception as exc:
        raise_http_error(exc, "Create dispute")


@router.post("/bulk", response_model=BulkDisputeResult)
def create_bulk_disputes(request: BulkDisputeRequest, service: DisputeService = Depends(get_dispute_service)):
    try:
        return service.create_bulk_disputes(request.invoice_item_ids, request.category, request.reason)
    except Exception as exc:
        raise_http_error(exc, "Create bulk disputes")


@router.get("/stats", response_model=DisputeStats)
def dispute_stats(
    start: Optional[date] = None,
    end: Optional[date] = None,
    service: DisputeService = Depends(get_dispute_service),
):
    try:
        return service.get_dispute_stats(start, end)
    except Exception as exc:
        raise_http_error(exc, "Get dispute stats")


@router.get("/{dispute_id}", response_model=Dispute)
def get_dispute(dispute_id: str, service: DisputeService = Depends(get_dispute_service)):
    try:
        return service.get_dispute(dispute_id)
    except Exception as exc:
        raise_http_error(exc, "Get dispute")


@router.post("/{dispute_id}/status", response_model=Dispute)
def update_dispute_status(
    dispute_id: str,
    update: DisputeStatusUpdate,
    service: DisputeService = Depends(get_dispute_service),
):
    try:
        return service.update_dispute_status(dispute_id, update.status, update.resolution)
    except Exception as exc:
        raise_http_error(exc, "Update dispute status")


@router.post("/{dispute_id}/assign", response_model=Dispute)
def assign_dispute(
    dispute_id: str,
    assignment: DisputeAssignment,
    service: DisputeService = Depends(get_dispute_service),
):
    try:
        return service.assign_dispute(dispute_id, assignment.user_id)
    except Exception as exc:
        raise_http_error(exc, "Assign dispute")


@router.get("/{dispute_id}/messages", response_model=List[DisputeMessage])
def get_messages(dispute_id: str, service: DisputeService = Depends(get_dispute_service)):
    try:
        return service.get_messages(dispute_id)
    except Exception as exc:
        raise_http_error(exc, "Get dispute messages")


@router.post("/{dispute_id}/messages", response_model=DisputeMessage, status_code=status.HTTP_201_CREATED)
def add_message(
    dispute_id: str,
    data: DisputeMessageCreate,
    service: DisputeService = Depends(get_dispute_service),
):
    try:
        return service.add_message(dispute_id, data)
    except Exception as exc:
        raise_http_error(exc, "Add dispute message")
