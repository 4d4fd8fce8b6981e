"""
Patient records billed through client invoices.
"""
import logging
import math
from typing import Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import RecordNotFoundError, handle_backend_error
from labbilling.schemas.billing_schema import FilterOptions, PaginatedResponse, Patient, PatientUpdate


logger = logging.getLogger(__name__)

PATIENTS_TABLE = "patients"

PATIENT_SORT_COLUMNS = {
    "first_name": "first_name",
    "last_name": "last_name",
    "dob": "date_of_birth",
    "created_at": "created_at",
}


class PatientService:
    def __init__(self, client: BackendClient, organization_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id

    def list_patients(self, filters: Optional[FilterOptions] = None) -> PaginatedResponse[Patient]:
        """
        List patients, optionally restricted to some clients.

        Search matches first name, last name and MRN. Default order is last
        name then first name.
        """
        filters = filters or FilterOptions()
        query = self.client.table(PATIENTS_TABLE).select("*", count="exact")
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.or_(
                f"first_name.ilike.{pattern},last_name.ilike.{pattern},mrn.ilike.{pattern}"
            )
        if filters.client_ids:
            query = query.in_("client_id", filters.client_ids)

        if filters.sort_by:
            column = PATIENT_SORT_COLUMNS.get(filters.sort_by, "last_name")
            query = query.order(column, ascending=filters.sort_direction == "asc")
        else:
            query = query.order("last_name").order("first_name")

        start = (filters.page - 1) * filters.limit
        query = query.range(start, start + filters.limit - 1)
        try:
            response = query.execute()
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Patients")

        patients = [Patient(**row) for row in response.data or []]
        total = response.count if response.count is not None else len(patients)
        return PaginatedResponse[Patient](
            data=patients,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    def list_patients_by_client(
        self, client_id: str, filters: Optional[FilterOptions] = None
    ) -> PaginatedResponse[Patient]:
        filters = (filters or FilterOptions()).model_copy(update={"client_ids": [client_id]})
        return self.list_patients(filters)

    def get_patient(self, patient_id: str) -> Patient:
        try:
            response = (
                self.client.table(PATIENTS_TABLE)
                .select("*")
                .eq("id", patient_id)
                .maybe_single()
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Patient")
        if response.data is None:
            raise RecordNotFoundError(f"Patient with ID {patient_id} not found")
        return Patient(**response.data)

    def create_patient(self, data: Patient) -> Patient:
        if not data.client_id:
            raise ValueError("Client ID is required to create a patient")
        row = data.model_dump(exclude={"id"}, exclude_none=True)
        if self.organization_id:
            row["organization_id"] = self.organization_id
        try:
            response = self.client.table(PATIENTS_TABLE).insert(row).single().execute()
        except BackendError as exc:
            handle_backend_error(exc, "Create Patient")
        return Patient(**response.data)

    def update_patient(self, patient_id: str, data: PatientUpdate) -> Patient:
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            return self.get_patient(patient_id)
        try:
            rows = (
                self.client.table(PATIENTS_TABLE)
                .update(changes)
                .eq("id", patient_id)
                .execute()
                .data
            )
        except BackendError as exc:
            handle_backend_error(exc, "Update Patient")
        if not rows:
            raise RecordNotFoundError(f"Patient with ID {patient_id} not found")
        return Patient(**rows[0])

    def delete_patient(self, patient_id: str) -> None:
        try:
            rows = self.client.table(PATIENTS_TABLE).delete().eq("id", patient_id).execute().data
        except BackendError as exc:
            handle_backend_error(exc, "Delete Patient")
        if not rows:
            raise RecordNotFoundError(f"Patient with ID {patient_id} not found")
        logger.info("Deleted patient", extra={"patient_id": patient_id})


__all__ = ["PATIENTS_TABLE", "PatientService"]
