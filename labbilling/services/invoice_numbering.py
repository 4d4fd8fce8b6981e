"""
Invoice number allocation through the backend's sequence procedures.

The counter lives in the backend (one per laboratory and year) and is
incremented atomically there. Calls are never retried here: a retry after
an ambiguous failure could burn or duplicate a number.
"""
import logging
from datetime import date
from typing import Any, Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import handle_backend_error
from labbilling.core.invoice_calculations import format_invoice_number
from labbilling.schemas.billing_schema import InvoiceCounterStatus


logger = logging.getLogger(__name__)

NEXT_NUMBER_RPC = "get_next_invoice_number"
COUNTER_STATUS_RPC = "get_invoice_counter_status"
RESET_COUNTER_RPC = "reset_invoice_counter"

DEFAULT_PREFIX = "INV"
DEFAULT_FORMAT_PATTERN = "{prefix}-{year}-{number:06d}"


def generate_invoice_number(client: BackendClient, laboratory_id: str, prefix: Optional[str] = None) -> str:
    """
    Reserve the next invoice number for a laboratory.

    Args:
        client: Backend client.
        laboratory_id: Laboratory whose counter is incremented.
        prefix: Optional custom prefix; the backend default applies when
            omitted.

    Returns:
        The number exactly as the backend returned it.

    Raises:
        ValueError: If no laboratory id is given.
        BackendServiceError: If the procedure fails or returns nothing.
    """
    if not laboratory_id:
        raise ValueError("laboratory_id is required to generate an invoice number")

    try:
        response = client.rpc(
            NEXT_NUMBER_RPC,
            {"p_laboratory_id": laboratory_id, "p_prefix": prefix or None},
        )
        if not response.data:
            raise BackendError("Failed to generate invoice number")
    except BackendError as exc:
        handle_backend_error(exc, "Generate Invoice Number")

    logger.info("Generated invoice number", extra={"laboratory_id": laboratory_id})
    return response.data


def _first_row(data: Any) -> Optional[dict]:
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


def get_invoice_counter_status(
    client: BackendClient,
    laboratory_id: str,
    year: Optional[int] = None,
) -> InvoiceCounterStatus:
    """Preview the counter; a laboratory without one gets the default preview."""
    if not laboratory_id:
        raise ValueError("laboratory_id is required")

    try:
        response = client.rpc(COUNTER_STATUS_RPC, {"p_laboratory_id": laboratory_id, "p_year": year})
    except BackendError as exc:
        handle_backend_error(exc, "Get Invoice Counter Status")

    row = _first_row(response.data)
    if row is None:
        current_year = year or date.today().year
        return InvoiceCounterStatus(
            prefix=DEFAULT_PREFIX,
            year=current_year,
            last_value=0,
            next_value=1,
            format_pattern=DEFAULT_FORMAT_PATTERN,
            sample_number=format_invoice_number(1, prefix=f"{DEFAULT_PREFIX}-{current_year}"),
        )

    return InvoiceCounterStatus(
        prefix=row["prefix"],
        year=row["year"],
        last_value=row["last_value"],
        next_value=row["next_value"],
        format_pattern=row.get("format_pattern") or DEFAULT_FORMAT_PATTERN,
        sample_number=row["sample_number"],
    )


def reset_invoice_counter(
    client: BackendClient,
    laboratory_id: str,
    year: Optional[int] = None,
    new_value: int = 0,
) -> None:
    """Set a laboratory's counter back to ``new_value`` (admin operation)."""
    if not laboratory_id:
        raise ValueError("laboratory_id is required")
    if new_value < 0:
        raise ValueError("new_value cannot be negative")

    try:
        client.rpc(
            RESET_COUNTER_RPC,
            {"p_laboratory_id": laboratory_id, "p_year": year, "p_new_value": new_value},
        )
    except BackendError as exc:
        handle_backend_error(exc, "Reset Invoice Counter")

    logger.warning(
        "Invoice counter reset",
        extra={"laboratory_id": laboratory_id, "year": year, "new_value": new_value},
    )


__all__ = [
    "COUNTER_STATUS_RPC",
    "NEXT_NUMBER_RPC",
    "RESET_COUNTER_RPC",
    "generate_invoice_number",
    "get_invoice_counter_status",
    "reset_invoice_counter",
]
