"""
Clients, their clinics and clinic contacts.
"""
import logging
import math
from typing import Any, Dict, List, Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import RecordNotFoundError, handle_backend_error
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
)
from labbilling.services.audit_service import utc_now_iso


logger = logging.getLogger(__name__)

CLIENTS_TABLE = "clients"
CLINICS_TABLE = "clinics"
CONTACTS_TABLE = "clinic_contacts"

CLIENT_SORT_COLUMNS = {
    "name": "name",
    "code": "code",
    "created_at": "created_at",
    "updated_at": "updated_at",
}


class ClientService:
    """Service layer for clients and the clinics/contacts beneath them."""

    def __init__(self, client: BackendClient, organization_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id

    # -- clients ------------------------------------------------------------

    def list_clients(self, filters: Optional[FilterOptions] = None) -> PaginatedResponse[Client]:
        """List clients, searching name and address, sorted by name by default."""
        filters = filters or FilterOptions()
        query = self.client.table(CLIENTS_TABLE).select("*", count="exact")
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.or_(f"name.ilike.{pattern},address.ilike.{pattern}")

        if filters.sort_by:
            column = CLIENT_SORT_COLUMNS.get(filters.sort_by, "name")
            query = query.order(column, ascending=filters.sort_direction == "asc")
        else:
            query = query.order("name", ascending=True)

        start = (filters.page - 1) * filters.limit
        query = query.range(start, start + filters.limit - 1)
        try:
            response = query.execute()
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Clients")

        clients = [Client(**row) for row in response.data or []]
        total = response.count if response.count is not None else len(clients)
        return PaginatedResponse[Client](
            data=clients,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    def get_client(self, client_id: str) -> Client:
        """Fetch a client with its clinics and their contacts."""
        try:
            response = (
                self.client.table(CLIENTS_TABLE)
                .select("*")
                .eq("id", client_id)
                .maybe_single()
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Client")

        if response.data is None:
            raise RecordNotFoundError(f"Client with ID {client_id} not found")
        return Client(**response.data, clinics=self.list_clinics(client_id))

    def create_client(self, data: Client) -> Client:
        row = data.model_dump(exclude={"id", "clinics", "created_at", "updated_at"}, exclude_none=True)
        if self.organization_id:
            row["organization_id"] = self.organization_id
        try:
            response = self.client.table(CLIENTS_TABLE).insert(row).single().execute()
        except BackendError as exc:
            handle_backend_error(exc, "Create Client")
        logger.info("Created client", extra={"client_id": response.data["id"]})
        return Client(**response.data)

    def update_client(self, client_id: str, data: ClientUpdate) -> Client:
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            return self.get_client(client_id)
        changes["updated_at"] = utc_now_iso()
        self._update_one(CLIENTS_TABLE, changes, "Update Client", f"Client with ID {client_id} not found", id=client_id)
        return self.get_client(client_id)

    def delete_client(self, client_id: str) -> None:
        self._delete_one(CLIENTS_TABLE, "Delete Client", f"Client with ID {client_id} not found", id=client_id)
        logger.info("Deleted client", extra={"client_id": client_id})

    # -- clinics ------------------------------------------------------------

    def list_clinics(self, client_id: str, search: Optional[str] = None) -> List[Clinic]:
        query = self.client.table(CLINICS_TABLE).select("*").eq("client_id", client_id)
        if search:
            pattern = f"%{search}%"
            query = query.or_(f"name.ilike.{pattern},address.ilike.{pattern}")
        try:
            clinic_rows = query.order("name").execute().data or []
            contacts = self._contacts_by_clinic([row["id"] for row in clinic_rows])
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Clinics")
        return [Clinic(**row, contacts=contacts.get(row["id"], [])) for row in clinic_rows]

    def _contacts_by_clinic(self, clinic_ids: List[str]) -> Dict[str, List[ClinicContact]]:
        if not clinic_ids:
            return {}
        rows = (
            self.client.table(CONTACTS_TABLE)
            .select("*")
            .in_("clinic_id", clinic_ids)
            .order("name")
            .execute()
            .data
            or []
        )
        grouped: Dict[str, List[ClinicContact]] = {}
        for row in rows:
            grouped.setdefault(row["clinic_id"], []).append(ClinicContact(**row))
        return grouped

    def get_clinic(self, client_id: str, clinic_id: str) -> Clinic:
        row = self._require_clinic(client_id, clinic_id)
        return Clinic(**row, contacts=self.list_contacts(client_id, clinic_id))

    def _require_clinic(self, client_id: str, clinic_id: str) -> Dict[str, Any]:
        try:
            response = (
                self.client.table(CLINICS_TABLE)
                .select("*")
                .eq("id", clinic_id)
                .eq("client_id", client_id)
                .maybe_single()
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Clinic")
        if response.data is None:
            raise RecordNotFoundError(f"Clinic with ID {clinic_id} not found for client {client_id}")
        return response.data

    def create_clinic(self, client_id: str, data: Clinic) -> Clinic:
        row = data.model_dump(exclude={"id", "contacts"}, exclude_none=True)
        row["client_id"] = client_id
        try:
            response = self.client.table(CLINICS_TABLE).insert(row).single().execute()
        except BackendError as exc:
            handle_backend_error(exc, "Create Clinic")
        return Clinic(**response.data)

    def update_clinic(self, client_id: str, clinic_id: str, data: ClinicUpdate) -> Clinic:
        changes = data.model_dump(exclude_unset=True)
        if changes:
            self._update_one(
                CLINICS_TABLE,
                changes,
                "Update Clinic",
                f"Clinic with ID {clinic_id} not found for client {client_id}",
                id=clinic_id,
                client_id=client_id,
            )
        return self.get_clinic(client_id, clinic_id)

    def delete_clinic(self, client_id: str, clinic_id: str) -> None:
        self._delete_one(
            CLINICS_TABLE,
            "Delete Clinic",
            f"Clinic with ID {clinic_id} not found for client {client_id}",
            id=clinic_id,
            client_id=client_id,
        )

    # -- contacts -----------------------------------------------------------

    def list_contacts(self, client_id: str, clinic_id: str) -> List[ClinicContact]:
        self._require_clinic(client_id, clinic_id)
        try:
            return self._contacts_by_clinic([clinic_id]).get(clinic_id, [])
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Clinic Contacts")

    def create_contact(self, client_id: str, clinic_id: str, data: ClinicContactCreate) -> ClinicContact:
        """
        Add a contact to a clinic.

        The first contact of a clinic becomes primary unless told otherwise;
        a new primary contact demotes the previous one.
        """
        self._require_clinic(client_id, clinic_id)
        try:
            existing = (
                self.client.table(CONTACTS_TABLE)
                .select("id,is_primary")
                .eq("clinic_id", clinic_id)
                .execute()
                .data
                or []
            )
            is_primary = data.is_primary if data.is_primary is not None else not existing
            row = data.model_dump(exclude_none=True)
            row.update(clinic_id=clinic_id, is_primary=is_primary)
            contact = self.client.table(CONTACTS_TABLE).insert(row).single().execute().data

            if is_primary and any(c.get("is_primary") for c in existing):
                self._demote_other_contacts(clinic_id, contact["id"])
        except BackendError as exc:
            handle_backend_error(exc, "Create Clinic Contact")
        return ClinicContact(**contact)

    def update_contact(
        self,
        client_id: str,
        clinic_id: str,
        contact_id: str,
        data: ClinicContactUpdate,
    ) -> ClinicContact:
        current = self._require_contact(client_id, clinic_id, contact_id)
        changes = data.model_dump(exclude_unset=True)
        making_primary = bool(changes.get("is_primary")) and not current.get("is_primary")
        if not changes:
            return ClinicContact(**current)

        try:
            rows = (
                self.client.table(CONTACTS_TABLE)
                .update(changes)
                .eq("id", contact_id)
                .eq("clinic_id", clinic_id)
                .execute()
                .data
                or []
            )
            if making_primary:
                self._demote_other_contacts(clinic_id, contact_id)
        except BackendError as exc:
            handle_backend_error(exc, "Update Clinic Contact")
        return ClinicContact(**(rows[0] if rows else {**current, **changes}))

    def delete_contact(self, client_id: str, clinic_id: str, contact_id: str) -> None:
        """Delete a contact; removing the primary promotes another one."""
        current = self._require_contact(client_id, clinic_id, contact_id)
        try:
            self.client.table(CONTACTS_TABLE).delete().eq("id", contact_id).eq(
                "clinic_id", clinic_id
            ).execute()
            if current.get("is_primary"):
                others = (
                    self.client.table(CONTACTS_TABLE)
                    .select("id")
                    .eq("clinic_id", clinic_id)
                    .limit(1)
                    .execute()
                    .data
                    or []
                )
                if others:
                    self.client.table(CONTACTS_TABLE).update({"is_primary": True}).eq(
                        "id", others[0]["id"]
                    ).eq("clinic_id", clinic_id).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Delete Clinic Contact")

    def _require_contact(self, client_id: str, clinic_id: str, contact_id: str) -> Dict[str, Any]:
        self._require_clinic(client_id, clinic_id)
        try:
            response = (
                self.client.table(CONTACTS_TABLE)
                .select("*")
                .eq("id", contact_id)
                .eq("clinic_id", clinic_id)
                .maybe_single()
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Clinic Contact")
        if response.data is None:
            raise RecordNotFoundError(f"Contact with ID {contact_id} not found for clinic {clinic_id}")
        return response.data

    def _demote_other_contacts(self, clinic_id: str, keep_contact_id: str) -> None:
        self.client.table(CONTACTS_TABLE).update({"is_primary": False}).eq(
            "clinic_id", clinic_id
        ).neq("id", keep_contact_id).execute()

    # -- helpers ------------------------------------------------------------

    def _update_one(self, table: str, changes: Dict[str, Any], context: str, missing: str, **match: Any) -> None:
        query = self.client.table(table).update(changes)
        for column, value in match.items():
            query = query.eq(column, value)
        try:
            rows = query.execute().data
        except BackendError as exc:
            handle_backend_error(exc, context)
        if not rows:
            raise RecordNotFoundError(missing)

    def _delete_one(self, table: str, context: str, missing: str, **match: Any) -> None:
        query = self.client.table(table).delete()
        for column, value in match.items():
            query = query.eq(column, value)
        try:
            rows = query.execute().data
        except BackendError as exc:
            handle_backend_error(exc, context)
        if not rows:
            raise RecordNotFoundError(missing)


__all__ = ["CLIENTS_TABLE", "CLINICS_TABLE", "CONTACTS_TABLE", "ClientService"]
