"""
API routes for invoices: CRUD, lifecycle, type separation, numbering and PDF.
"""
import logging
from datetime import date, datetime, time
from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response, status
from fastapi.responses import StreamingResponse

from labbilling.core.backend_client import BackendClient
from labbilling.core.invoice_calculations import (
    InsuranceAdjustment,
    calculate_patient_responsibility,
    calculate_totals,
)
from labbilling.core.invoice_pdf import render_invoice_pdf
from labbilling.routes.dependencies import (
    get_backend_client,
    get_laboratory_id,
    get_organization_id,
    raise_http_error,
    require_laboratory_id,
    require_organization_id,
)
from labbilling.schemas.billing_schema import (
    FilterOptions,
    Invoice,
    InvoiceCounterStatus,
    InvoiceCreate,
    InvoiceLineItem,
    InvoiceMixAnalysis,
    InvoiceTotals,
    InvoiceUpdate,
    LateFee,
    PaginatedResponse,
    PatientResponsibilityRequest,
    PatientResponsibilityResult,
    SeparatedGroup,
    SeparationRequest,
    SeparationStats,
    StatusTransitionRequest,
    TotalsRequest,
)
from labbilling.services.client_service import ClientService
from labbilling.services.invoice_numbering import (
    generate_invoice_number,
    get_invoice_counter_status,
    reset_invoice_counter,
)
from labbilling.services.invoice_separation_service import InvoiceTypeSeparationService
from labbilling.services.invoice_service import InvoiceService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/invoices", tags=["invoices"])


def get_invoice_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
) -> InvoiceService:
    return InvoiceService(client, organization_id)


def get_separation_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: str = Depends(require_organization_id),
    laboratory_id: Optional[str] = Depends(get_laboratory_id),
) -> InvoiceTypeSeparationService:
    return InvoiceTypeSeparationService(client, organization_id, laboratory_id)


@router.get("", response_model=PaginatedResponse[Invoice])
def list_invoices(
    search: Optional[str] = None,
    status_filter: Optional[List[str]] = Query(None, alias="status"),
    client_id: Optional[List[str]] = Query(None),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    sort_by: Optional[str] = None,
    sort_direction: str = "asc",
    page: int = 1,
    limit: int = 10,
    service: InvoiceService = Depends(get_invoice_service),
):
    """
    List invoices with search, filters and pagination.
    """
    try:
        filters = FilterOptions(
            search=search,
            status=status_filter or [],
            client_ids=client_id or [],
            date_from=date_from,
            date_to=date_to,
            sort_by=sort_by,
            sort_direction=sort_direction,
            page=page,
            limit=limit,
        )
        return service.list_invoices(filters)
    except Exception as exc:
        raise_http_error(exc, "List invoices")


@router.post("", response_model=Invoice, status_code=status.HTTP_201_CREATED)
def create_invoice(data: InvoiceCreate, service: InvoiceService = Depends(get_invoice_service)):
    try:
        return service.create_invoice(data)
    except Exception as exc:
        raise_http_error(exc, "Create invoice")


@router.post("/totals", response_model=InvoiceTotals)
def compute_totals(request: TotalsRequest):
    """
    Compute subtotal, discount, tax and total for a set of line items.
    """
    try:
        return calculate_totals(
            request.items,
            tax_rate=request.tax_rate,
            discount_amount=request.discount_amount,
            discount_percentage=request.discount_percentage,
        )
    except Exception as exc:
        raise_http_error(exc, "Calculate totals")


@router.post("/patient-responsibility", response_model=PatientResponsibilityResult)
def patient_responsibility(request: PatientResponsibilityRequest):
    """
    Split an invoice total between primary and secondary insurance and the patient.
    """
    try:
        primary = InsuranceAdjustment(**request.primary.model_dump()) if request.primary else None
        secondary = InsuranceAdjustment(**request.secondary.model_dump()) if request.secondary else None
        result = calculate_patient_responsibility(request.invoice_total, primary, secondary)
        return PatientResponsibilityResult(**vars(result))
    except Exception as exc:
        raise_http_error(exc, "Calculate patient responsibility")


@router.post("/separate", response_model=Dict[str, SeparatedGroup], status_code=status.HTTP_201_CREATED)
def create_separated_invoices(
    request: SeparationRequest,
    service: InvoiceTypeSeparationService = Depends(get_separation_service),
):
    """
    Create one invoice per invoice type found in the submitted line items.
    """
    try:
        groups = service.create_separated_invoices(
            request.client_id, request.items, request.billing_period, request.metadata
        )
        return {invoice_type.value: group for invoice_type, group in groups.items()}
    except Exception as exc:
        raise_http_error(exc, "Create separated invoices")


@router.get("/separation-stats", response_model=SeparationStats)
def separation_stats(
    start: date,
    end: date,
    service: InvoiceTypeSeparationService = Depends(get_separation_service),
):
    try:
        return service.get_separation_stats(datetime.combine(start, time.min), datetime.combine(end, time.max))
    except Exception as exc:
        raise_http_error(exc, "Get separation stats")


@router.post("/number")
def next_invoice_number(
    prefix: Optional[str] = None,
    client: BackendClient = Depends(get_backend_client),
    laboratory_id: str = Depends(require_laboratory_id),
):
    """
    Draw the next invoice number from the laboratory's counter.
    """
    try:
        return {"invoice_number": generate_invoice_number(client, laboratory_id, prefix)}
    except Exception as exc:
        raise_http_error(exc, "Generate invoice number")


@router.get("/counter", response_model=InvoiceCounterStatus)
def counter_status(
    year: Optional[int] = None,
    client: BackendClient = Depends(get_backend_client),
    laboratory_id: str = Depends(require_laboratory_id),
):
    try:
        return get_invoice_counter_status(client, laboratory_id, year)
    except Exception as exc:
        raise_http_error(exc, "Get invoice counter")


@router.post("/counter/reset", status_code=status.HTTP_204_NO_CONTENT)
def reset_counter(
    year: Optional[int] = None,
    new_value: int = 0,
    client: BackendClient = Depends(get_backend_client),
    laboratory_id: str = Depends(require_laboratory_id),
):
    try:
        reset_invoice_counter(client, laboratory_id, year, new_value)
    except Exception as exc:
        raise_http_error(exc, "Reset invoice counter")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{invoice_id}", response_model=Invoice)
def get_invoice(invoice_id: str, service: InvoiceService = Depends(get_invoice_service)):
    try:
        return service.get_invoice(invoice_id)
    except Exception as exc:
        raise_http_error(exc, "Get invoice")


@router.patch("/{invoice_id}", response_model=Invoice)
def update_invoice(invoice_id: str, data: InvoiceUpdate, service: InvoiceService = Depends(get_invoice_service)):
    """
    Update an invoice. Invoices past draft only accept payment fields unless
    ``force_edit`` is set.
    """
    try:
        return service.update_invoice(invoice_id, data)
    except Exception as exc:
        raise_http_error(exc, "Update invoice")


@router.delete("/{invoice_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_invoice(invoice_id: str, service: InvoiceService = Depends(get_invoice_service)):
    try:
        service.delete_invoice(invoice_id)
    except Exception as exc:
        raise_http_error(exc, "Delete invoice")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{invoice_id}/status", response_model=Invoice)
def change_status(
    invoice_id: str,
    request: StatusTransitionRequest,
    service: InvoiceService = Depends(get_invoice_service),
):
    try:
        return service.update_status(
            invoice_id, request.status, freeze_prices=request.freeze_prices, user_id=request.user_id
        )
    except Exception as exc:
        raise_http_error(exc, "Change invoice status")


@router.post("/{invoice_id}/finalize", response_model=Invoice)
def finalize_invoice(
    invoice_id: str,
    user_id: Optional[str] = None,
    service: InvoiceService = Depends(get_invoice_service),
):
    try:
        return service.finalize_invoice(invoice_id, user_id=user_id)
    except Exception as exc:
        raise_http_error(exc, "Finalize invoice")


@router.post("/{invoice_id}/revert", response_model=Invoice)
def revert_to_draft(
    invoice_id: str,
    reason: str = Body(..., embed=True, min_length=1),
    service: InvoiceService = Depends(get_invoice_service),
):
    try:
        return service.revert_to_draft(invoice_id, reason)
    except Exception as exc:
        raise_http_error(exc, "Revert invoice")


@router.post("/{invoice_id}/items", response_model=Invoice)
def add_line_items(
    invoice_id: str,
    items: List[InvoiceLineItem],
    service: InvoiceService = Depends(get_invoice_service),
):
    try:
        return service.add_line_items(invoice_id, items)
    except Exception as exc:
        raise_http_error(exc, "Add line items")


@router.post("/{invoice_id}/split", response_model=Dict[str, SeparatedGroup])
def split_invoice(
    invoice_id: str,
    service: InvoiceTypeSeparationService = Depends(get_separation_service),
):
    """
    Replace a mixed-type invoice with one invoice per type.
    """
    try:
        groups = service.split_existing_invoice(invoice_id)
        return {invoice_type.value: group for invoice_type, group in groups.items()}
    except Exception as exc:
        raise_http_error(exc, "Split invoice")


@router.get("/{invoice_id}/mix-analysis", response_model=InvoiceMixAnalysis)
def analyze_invoice_mix(
    invoice_id: str,
    service: InvoiceTypeSeparationService = Depends(get_separation_service),
):
    try:
        return service.analyze_invoice_mix(invoice_id)
    except Exception as exc:
        raise_http_error(exc, "Analyze invoice")


@router.get("/{invoice_id}/late-fee", response_model=LateFee)
def late_fee(
    invoice_id: str,
    as_of: Optional[date] = None,
    service: InvoiceService = Depends(get_invoice_service),
):
    try:
        return service.get_late_fee(invoice_id, as_of)
    except Exception as exc:
        raise_http_error(exc, "Calculate late fee")


@router.get("/{invoice_id}/pdf")
def download_invoice_pdf(
    invoice_id: str,
    client: BackendClient = Depends(get_backend_client),
    service: InvoiceService = Depends(get_invoice_service),
):
    """
    Download the invoice as a PDF.
    """
    try:
        invoice = service.get_invoice(invoice_id)
        client_name = None
        if invoice.client_id:
            client_name = ClientService(client).get_client(invoice.client_id).name
        pdf = render_invoice_pdf(invoice, client_name=client_name)
    except Exception as exc:
        raise_http_error(exc, "Generate invoice PDF")

    filename = f"{invoice.invoice_number or invoice_id}.pdf"
    return StreamingResponse(
        iter([pdf]),
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
