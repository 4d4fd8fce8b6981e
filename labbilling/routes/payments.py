"""
API routes for posting payments and reconciling them against invoices.
"""
import logging
from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, status

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, get_organization_id, raise_http_error
from labbilling.schemas.billing_schema import (
    AllocationResult,
    MultiInvoicePaymentRequest,
    Payment,
    PaymentCredit,
    PaymentRequest,
    ReconciliationReport,
)
from labbilling.services.payment_service import PaymentService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


def get_payment_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
) -> PaymentService:
    return PaymentService(client, organization_id)


@router.get("", response_model=List[Payment])
def list_payments(
    client_id: Optional[str] = None,
    limit: int = 100,
    service: PaymentService = Depends(get_payment_service),
):
    try:
        return service.list_payments(client_id, limit)
    except Exception as exc:
        raise_http_error(exc, "List payments")


@router.post("", response_model=AllocationResult, status_code=status.HTTP_201_CREATED)
def post_payment(
    request: PaymentRequest,
    user_id: Optional[str] = None,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Post a payment to one invoice. Any overpayment becomes a client credit.

    - Resubmitting the same invoice, amount, method and reference -> HTTP 400
    """
    try:
        return service.allocate_payment(request, user_id=user_id)
    except Exception as exc:
        raise_http_error(exc, "Post payment")


@router.post("/multi", response_model=AllocationResult, status_code=status.HTTP_201_CREATED)
def post_multi_invoice_payment(
    request: MultiInvoicePaymentRequest,
    user_id: Optional[str] = None,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Spread one payment over several invoices of a client, oldest listed first.
    """
    try:
        return service.allocate_multi_invoice(request, user_id=user_id)
    except Exception as exc:
        raise_http_error(exc, "Post multi-invoice payment")


@router.get("/reconciliation", response_model=ReconciliationReport)
def reconciliation_report(
    start: date,
    end: date,
    status_filter: Literal["all", "unallocated", "partial", "complete"] = "all",
    service: PaymentService = Depends(get_payment_service),
):
    try:
        return service.get_reconciliation_report(start, end, status_filter)
    except Exception as exc:
        raise_http_error(exc, "Build reconciliation report")


@router.get("/credits/{client_id}", response_model=List[PaymentCredit])
def client_credits(client_id: str, service: PaymentService = Depends(get_payment_service)):
    try:
        return service.get_client_credits(client_id)
    except Exception as exc:
        raise_http_error(exc, "Get client credits")


@router.get("/{payment_id}", response_model=Payment)
def get_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    try:
        return service.get_payment(payment_id)
    except Exception as exc:
        raise_http_error(exc, "Get payment")


@router.get("/{payment_id}/integrity")
def verify_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    try:
        return {"payment_id": payment_id, "balanced": service.verify_payment_integrity(payment_id)}
    except Exception as exc:
        raise_http_error(exc, "Verify payment")
