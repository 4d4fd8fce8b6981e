"""
API routes for patients.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, get_organization_id, raise_http_error
from labbilling.schemas.billing_schema import FilterOptions, PaginatedResponse, Patient, PatientUpdate
from labbilling.services.patient_service import PatientService


router = APIRouter(prefix="/api/patients", tags=["patients"])


def get_patient_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
) -> PatientService:
    return PatientService(client, organization_id)


@router.get("", response_model=PaginatedResponse[Patient])
def list_patients(
    search: Optional[str] = None,
    client_id: Optional[List[str]] = Query(None),
    sort_by: Optional[str] = None,
    sort_direction: str = "asc",
    page: int = 1,
    limit: int = 10,
    service: PatientService = Depends(get_patient_service),
):
    try:
        filters = FilterOptions(
            search=search,
            client_ids=client_id or [],
            sort_by=sort_by,
            sort_direction=sort_direction,
            page=page,
            limit=limit,
        )
        return service.list_patients(filters)
    except Exception as exc:
        raise_http_error(exc, "List patients")


@router.post("", response_model=Patient, status_code=status.HTTP_201_CREATED)
def create_patient(data: Patient, service: PatientService = Depends(get_patient_service)):
    try:
        return service.create_patient(data)
    except Exception as exc:
        raise_http_error(exc, "Create patient")


@router.get("/{patient_id}", response_model=Patient)
def get_patient(patient_id: str, service: PatientService = Depends(get_patient_service)):
    try:
        return service.get_patient(patient_id)
    except Exception as exc:
        raise_http_error(exc, "Get patient")


@router.patch("/{patient_id}", response_model=Patient)
def update_patient(patient_id: str, data: PatientUpdate, service: PatientService = Depends(get_patient_service)):
    try:
        return service.update_patient(patient_id, data)
    except Exception as exc:
        raise_http_error(exc, "Update patient")


@router.delete("/{patient_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_patient(patient_id: str, service: PatientService = Depends(get_patient_service)):
    try:
        service.delete_patient(patient_id)
    except Exception as exc:
        raise_http_error(exc, "Delete patient")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
