"""
CPT code catalogue and per-client / per-clinic price lookup.
"""
import logging
import math
from typing import List, Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import RecordNotFoundError, handle_backend_error
from labbilling.schemas.billing_schema import CptCode, CptPrice, FilterOptions, PaginatedResponse


logger = logging.getLogger(__name__)

CPT_CODES_TABLE = "cpt_codes"
CLIENT_OVERRIDES_TABLE = "client_pricing_overrides"
CLINIC_OVERRIDES_TABLE = "clinic_pricing_overrides"

DEFAULT_PAGE_SIZE = 100

CPT_SORT_COLUMNS = {
    "code": "code",
    "description": "description",
    "default_price": "default_price",
}


class CptService:
    def __init__(self, client: BackendClient):
        self.client = client

    def list_cpt_codes(self, filters: Optional[FilterOptions] = None) -> PaginatedResponse[CptCode]:
        """List CPT codes, 100 per page unless a limit is given, sorted by code."""
        filters = filters or FilterOptions(limit=DEFAULT_PAGE_SIZE)
        query = self.client.table(CPT_CODES_TABLE).select("*", count="exact")
        if filters.search:
            pattern = f"%{filters.search}%"
            query = query.or_(f"code.ilike.{pattern},description.ilike.{pattern}")

        if filters.sort_by:
            column = CPT_SORT_COLUMNS.get(filters.sort_by, "code")
            query = query.order(column, ascending=filters.sort_direction == "asc")
        else:
            query = query.order("code")

        start = (filters.page - 1) * filters.limit
        query = query.range(start, start + filters.limit - 1)
        try:
            response = query.execute()
        except BackendError as exc:
            handle_backend_error(exc, "Fetch CPT Codes")

        codes = [CptCode(**row) for row in response.data or []]
        total = response.count if response.count is not None else len(codes)
        return PaginatedResponse[CptCode](
            data=codes,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    def get_cpt_code(self, cpt_code_id: str) -> CptCode:
        return self._get_one("id", cpt_code_id, f"CPT code with ID {cpt_code_id} not found")

    def get_cpt_code_by_code(self, code: str) -> CptCode:
        return self._get_one("code", code, f"CPT code {code} not found")

    def _get_one(self, column: str, value: str, missing: str) -> CptCode:
        try:
            response = (
                self.client.table(CPT_CODES_TABLE)
                .select("*")
                .eq(column, value)
                .maybe_single()
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get CPT Code")
        if response.data is None:
            raise RecordNotFoundError(missing)
        return CptCode(**response.data)

    def search_cpt_codes(self, term: str, limit: int = 10) -> List[CptCode]:
        """Match ``term`` against code and description."""
        if not term or not term.strip():
            return []
        pattern = f"%{term.strip()}%"
        try:
            response = (
                self.client.table(CPT_CODES_TABLE)
                .select("*")
                .or_(f"code.ilike.{pattern},description.ilike.{pattern}")
                .limit(limit)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Search CPT Codes")
        return [CptCode(**row) for row in response.data or []]

    def get_client_price(self, cpt_code_id: str, client_id: str) -> CptPrice:
        """Client override price for a CPT code, else its default price."""
        return self._effective_price(CLIENT_OVERRIDES_TABLE, "client_id", client_id, cpt_code_id)

    def get_clinic_price(self, cpt_code_id: str, clinic_id: str) -> CptPrice:
        """Clinic override price for a CPT code, else its default price."""
        return self._effective_price(CLINIC_OVERRIDES_TABLE, "clinic_id", clinic_id, cpt_code_id)

    def _effective_price(self, table: str, owner_column: str, owner_id: str, cpt_code_id: str) -> CptPrice:
        try:
            override = (
                self.client.table(table)
                .select("id,price")
                .eq("cpt_code_id", cpt_code_id)
                .eq(owner_column, owner_id)
                .maybe_single()
                .execute()
                .data
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get CPT Price Override")

        if override:
            return CptPrice(
                id=str(override["id"]),
                cpt_code_id=cpt_code_id,
                price=override["price"],
                is_override=True,
            )

        code = self.get_cpt_code(cpt_code_id)
        return CptPrice(id=str(code.id), cpt_code_id=cpt_code_id, price=code.default_price, is_override=False)


__all__ = ["CPT_CODES_TABLE", "CptService"]
