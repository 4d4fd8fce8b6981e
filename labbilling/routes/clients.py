"""
API routes for clients, their clinics and clinic contacts.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status

from labbilling.core.backend_client import BackendClient
from labbilling.routes.dependencies import get_backend_client, get_organization_id, raise_http_error
from labbilling.schemas.billing_schema import (
    Client,
    ClientUpdate,
    Clinic,
    ClinicContact,
    ClinicContactCreate,
    ClinicContactUpdate,
    ClinicUpdate,
    FilterOptions,
    PaginatedResponse,
    Patient,
)
from labbilling.services.client_service import ClientService
from labbilling.services.patient_service import PatientService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/clients", tags=["clients"])


def get_client_service(
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
) -> ClientService:
    return ClientService(client, organization_id)


@router.get("", response_model=PaginatedResponse[Client])
def list_clients(
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_direction: str = "asc",
    page: int = 1,
    limit: int = 10,
    service: ClientService = Depends(get_client_service),
):
    try:
        filters = FilterOptions(
            search=search, sort_by=sort_by, sort_direction=sort_direction, page=page, limit=limit
        )
        return service.list_clients(filters)
    except Exception as exc:
        raise_http_error(exc, "List clients")


@router.post("", response_model=Client, status_code=status.HTTP_201_CREATED)
def create_client(data: Client, service: ClientService = Depends(get_client_service)):
    try:
        return service.create_client(data)
    except Exception as exc:
        raise_http_error(exc, "Create client")


@router.get("/{client_id}", response_model=Client)
def get_client(client_id: str, service: ClientService = Depends(get_client_service)):
    """
    Retrieve a client with its clinics and their contacts.
    """
    try:
        return service.get_client(client_id)
    except Exception as exc:
        raise_http_error(exc, "Get client")


@router.patch("/{client_id}", response_model=Client)
def update_client(client_id: str, data: ClientUpdate, service: ClientService = Depends(get_client_service)):
    try:
        return service.update_client(client_id, data)
    except Exception as exc:
        raise_http_error(exc, "Update client")


@router.delete("/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(client_id: str, service: ClientService = Depends(get_client_service)):
    try:
        service.delete_client(client_id)
    except Exception as exc:
        raise_http_error(exc, "Delete client")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{client_id}/patients", response_model=PaginatedResponse[Patient])
def list_client_patients(
    client_id: str,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    client: BackendClient = Depends(get_backend_client),
    organization_id: Optional[str] = Depends(get_organization_id),
):
    try:
        filters = FilterOptions(search=search, page=page, limit=limit)
        return PatientService(client, organization_id).list_patients_by_client(client_id, filters)
    except Exception as exc:
        raise_http_error(exc, "List client patients")


# -- clinics ------------------------------------------------------------------

@router.get("/{client_id}/clinics", response_model=List[Clinic])
def list_clinics(client_id: str, search: Optional[str] = None, service: ClientService = Depends(get_client_service)):
    try:
        return service.list_clinics(client_id, search)
    except Exception as exc:
        raise_http_error(exc, "List clinics")


@router.post("/{client_id}/clinics", response_model=Clinic, status_code=status.HTTP_201_CREATED)
def create_clinic(client_id: str, data: Clinic, service: ClientService = Depends(get_client_service)):
    try:
        return service.create_clinic(client_id, data)
    except Exception as exc:
        raise_http_error(exc, "Create clinic")


@router.get("/{client_id}/clinics/{clinic_id}", response_model=Clinic)
def get_clinic(client_id: str, clinic_id: str, service: ClientService = Depends(get_client_service)):
    try:
        return service.get_clinic(client_id, clinic_id)
    except Exception as exc:
        raise_http_error(exc, "Get clinic")


@router.patch("/{client_id}/clinics/{clinic_id}", response_model=Clinic)
def update_clinic(
    client_id: str,
    clinic_id: str,
    data: ClinicUpdate,
    service: ClientService = Depends(get_client_service),
):
    try:
        return service.update_clinic(client_id, clinic_id, data)
    except Exception as exc:
        raise_http_error(exc, "Update clinic")


@router.delete("/{client_id}/clinics/{clinic_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_clinic(client_id: str, clinic_id: str, service: ClientService = Depends(get_client_service)):
    try:
        service.delete_clinic(client_id, clinic_id)
    except Exception as exc:
        raise_http_error(exc, "Delete clinic")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# -- contacts -----------------------------------------------------------------

@router.get("/{client_id}/clinics/{clinic_id}/contacts", response_model=List[ClinicContact])
def list_contacts(client_id: str, clinic_id: str, service: ClientService = Depends(get_client_service)):
    try:
        return service.list_contacts(client_id, clinic_id)
    except Exception as exc:
        raise_http_error(exc, "List contacts")


@router.post(
    "/{client_id}/clinics/{clinic_id}/contacts",
    response_model=ClinicContact,
    status_code=status.HTTP_201_CREATED,
)
def create_contact(
    client_id: str,
    clinic_id: str,
    data: ClinicContactCreate,
    service: ClientService = Depends(get_client_service),
):
    try:
        return service.create_contact(client_id, clinic_id, data)
    except Exception as exc:
        raise_http_error(exc, "Create contact")


@router.patch("/{client_id}/clinics/{clinic_id}/contacts/{contact_id}", response_model=ClinicContact)
def update_contact(
    client_id: str,
    clinic_id: str,
    contact_id: str,
    data: ClinicContactUpdate,
    service: ClientService = Depends(get_client_service),
):
    try:
        return service.update_contact(client_id, clinic_id, contact_id, data)
    except Exception as exc:
        raise_http_error(exc, "Update contact")


@router.delete(
    "/{client_id}/clinics/{clinic_id}/contacts/{contact_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_contact(
    client_id: str,
    clinic_id: str,
    contact_id: str,
    service: ClientService = Depends(get_client_service),
):
    try:
        service.delete_contact(client_id, clinic_id, contact_id)
    except Exception as exc:
        raise_http_error(exc, "Delete contact")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
