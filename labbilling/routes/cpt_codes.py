"""
API routes for the CPT code catalogue and effective prices.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, raise_http_error
from labbilling.schemas.billing_schema import CptCode, CptPrice, FilterOptions, PaginatedResponse
from labbilling.services.cpt_service import DEFAULT_PAGE_SIZE, CptService


router = APIRouter(prefix="/api/cpt-codes", tags=["cpt-codes"])


def get_cpt_service(client: BackendClient = Depends(get_backend_client)) -> CptService:
    return CptService(client)


@router.get("", response_model=PaginatedResponse[CptCode])
def list_cpt_codes(
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_direction: str = "asc",
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    service: CptService = Depends(get_cpt_service),
):
    try:
        filters = FilterOptions(
            search=search, sort_by=sort_by, sort_direction=sort_direction, page=page, limit=limit
        )
        return service.list_cpt_codes(filters)
    except Exception as exc:
        raise_http_error(exc, "List CPT codes")


@router.get("/search", response_model=List[CptCode])
def search_cpt_codes(q: str, limit: int = 10, service: CptService = Depends(get_cpt_service)):
    try:
        return service.search_cpt_codes(q, limit)
    except Exception as exc:
        raise_http_error(exc, "Search CPT codes")


@router.get("/by-code/{code}", response_model=CptCode)
def get_cpt_code_by_code(code: str, service: CptService = Depends(get_cpt_service)):
    try:
        return service.get_cpt_code_by_code(code)
    except Exception as exc:
        raise_http_error(exc, "Get CPT code")


@router.get("/{cpt_code_id}", response_model=CptCode)
def get_cpt_code(cpt_code_id: str, service: CptService = Depends(get_cpt_service)):
    try:
        return service.get_cpt_code(cpt_code_id)
    except Exception as exc:
        raise_http_error(exc, "Get CPT code")


@router.get("/{cpt_code_id}/price", response_model=CptPrice)
def get_effective_price(
    cpt_code_id: str,
    client_id: Optional[str] = None,
    clinic_id: Optional[str] = None,
    service: CptService = Depends(get_cpt_service),
):
    """
    Price for a CPT code: the clinic or client override when one exists,
    otherwise the code's default price.
    """
    if bool(client_id) == bool(clinic_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide exactly one of client_id or clinic_id",
        )
    try:
        if clinic_id:
            return service.get_clinic_price(cpt_code_id, clinic_id)
        return service.get_client_price(cpt_code_id, client_id)
    except Exception as exc:
        raise_http_error(exc, "Get CPT price")
