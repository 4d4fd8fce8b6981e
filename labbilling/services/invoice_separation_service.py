"""
Split mixed line items into one invoice per invoice type.

SNF, Hospice, Invalids and Regular work is paid on different timelines;
invoicing them separately keeps an unresolved Invalids line from holding up
payment of everything else.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import BackendServiceError, RecordNotFoundError, handle_backend_error
from labbilling.core.invoice_types import (
    analyze_line_item_mix,
    calculate_type_due_date,
    initial_status_for_type,
    separate_line_items,
)
from labbilling.schemas.billing_schema import (
    BillingPeriod,
    InvoiceLineItem,
    InvoiceMixAnalysis,
    InvoiceStatus,
    InvoiceType,
    SeparatedGroup,
    SeparationStats,
)
from labbilling.services.audit_service import record_audit_event, utc_now_iso
from labbilling.services.invoice_numbering import generate_invoice_number
from labbilling.services.invoice_service import INVOICE_ITEMS_TABLE, INVOICES_TABLE


logger = logging.getLogger(__name__)

# Columns copied from a source line item onto the separated invoice's item.
_ITEM_COLUMNS = (
    "accession_number",
    "patient_id",
    "patient_first_name",
    "patient_last_name",
    "patient_dob",
    "patient_mrn",
    "cpt_code",
    "description",
    "service_date",
    "units",
    "unit_price",
)


class InvoiceTypeSeparationService:
    """
    Creates, splits and analyzes invoices by invoice type for one
    organization.
    """

    def __init__(self, client: BackendClient, organization_id: str, laboratory_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id
        self.laboratory_id = laboratory_id

    def generate_base_invoice_number(self) -> str:
        """
        Number shared by every invoice of one separation batch.

        With a laboratory id the backend sequence procedure is used;
        otherwise ``INV-YYYYMM-NNNN`` from this month's invoice count.
        """
        if self.laboratory_id:
            return generate_invoice_number(self.client, self.laboratory_id)

        today = date.today()
        month_start = today.replace(day=1)
        try:
            response = (
                self.client.table(INVOICES_TABLE)
                .select("id", count="exact")
                .eq("organization_id", self.organization_id)
                .gte("created_at", month_start)
                .limit(1)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Generate Base Invoice Number")

        sequence = (response.count or 0) + 1
        return f"INV-{today:%Y%m}-{sequence:04d}"

    def create_separated_invoices(
        self,
        client_id: str,
        items: List[InvoiceLineItem],
        billing_period: BillingPeriod,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[InvoiceType, SeparatedGroup]:
        """
        Create one invoice per invoice type found in ``items``.

        Each invoice is numbered ``<base>-<type>``, gets its type's due date
        and initial status, then its line items and an audit row. A type
        whose writes fail is logged and skipped; invoices already created
        for other types are kept.

        Args:
            client_id: Client billed by every created invoice.
            items: Line items to distribute.
            billing_period: Service period covered by the invoices.
            metadata: Extra metadata merged into each invoice's metadata.

        Returns:
            The groups that were created, keyed by type, with ``invoice_id``
            set.
        """
        if not client_id:
            raise ValueError("Client ID is required")

        separated = separate_line_items(items)
        base_number = self.generate_base_invoice_number()
        created: Dict[InvoiceType, SeparatedGroup] = {}

        for invoice_type, group in separated.items():
            if not group.items:
                continue
            try:
                invoice_id = self._create_type_invoice(
                    client_id, invoice_type, group, base_number, billing_period, metadata or {}
                )
            except BackendError as exc:
                logger.warning(
                    "Failed to create separated invoice",
                    extra={"invoice_type": invoice_type.value, "base_invoice_number": base_number, "error": str(exc)},
                )
                continue

            created[invoice_type] = group.model_copy(update={"invoice_id": invoice_id})
            record_audit_event(
                self.client,
                "invoice",
                invoice_id,
                "invoice_type_separation",
                {
                    "invoice_type": invoice_type.value,
                    "item_count": len(group.items),
                    "separated_at": utc_now_iso(),
                },
                organization_id=self.organization_id,
            )

        logger.info(
            "Separated invoices created",
            extra={"base_invoice_number": base_number, "types": [t.value for t in created]},
        )
        return created

    def _create_type_invoice(
        self,
        client_id: str,
        invoice_type: InvoiceType,
        group: SeparatedGroup,
        base_number: str,
        billing_period: BillingPeriod,
        metadata: Dict[str, Any],
    ) -> str:
        invoice_row = {
            "organization_id": self.organization_id,
            "client_id": client_id,
            "invoice_number": f"{base_number}-{invoice_type.value}",
            "invoice_type": invoice_type,
            "status": initial_status_for_type(invoice_type),
            "issue_date": date.today(),
            "due_date": calculate_type_due_date(invoice_type),
            "billing_period_start": billing_period.start,
            "billing_period_end": billing_period.end,
            "subtotal": group.subtotal,
            "total_amount": group.subtotal,
            "paid_amount": 0,
            "notes": f"Invoice Type: {invoice_type.value}",
            "metadata": {
                **metadata,
                "invoice_type": invoice_type.value,
                "base_invoice_number": base_number,
                "auto_separated": True,
            },
        }
        response = self.client.table(INVOICES_TABLE).insert(invoice_row).single().execute()
        invoice_id = response.data["id"]

        item_rows = []
        for item in group.items:
            row = {column: getattr(item, column) for column in _ITEM_COLUMNS}
            row.update(
                organization_id=self.organization_id,
                invoice_id=invoice_id,
                line_total=item.total_price,
                invoice_type=invoice_type,
            )
            item_rows.append(row)
        self.client.table(INVOICE_ITEMS_TABLE).insert(item_rows, returning=False).execute()
        return invoice_id

    def _load_invoice_with_items(self, invoice_id: str):
        try:
            response = (
                self.client.table(INVOICES_TABLE)
                .select("*")
                .eq("id", invoice_id)
                .maybe_single()
                .execute()
            )
            if response.data is None:
                raise RecordNotFoundError("Invoice not found")
            items_response = (
                self.client.table(INVOICE_ITEMS_TABLE)
                .select("*")
                .eq("invoice_id", invoice_id)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Load Invoice")

        items = [InvoiceLineItem(**row) for row in items_response.data or []]
        return response.data, items

    def split_existing_invoice(self, invoice_id: str) -> Dict[InvoiceType, SeparatedGroup]:
        """
        Replace a mixed invoice with one invoice per type.

        An invoice holding a single type is returned as its separation with
        nothing written. Otherwise the new invoices record ``split_from`` and
        the original is cancelled with ``split_into`` listing them.

        Raises:
            BackendServiceError: If no replacement invoice could be created;
                the original is then left as it was.
        """
        invoice, items = self._load_invoice_with_items(invoice_id)
        separated = separate_line_items(items)
        if len(separated) <= 1:
            return separated

        original_metadata = invoice.get("metadata") or {}
        split_date = utc_now_iso()
        period_start = invoice.get("billing_period_start") or invoice.get("issue_date") or date.today()
        period_end = invoice.get("billing_period_end") or period_start
        created = self.create_separated_invoices(
            invoice["client_id"],
            [group_item for group in separated.values() for group_item in group.items],
            BillingPeriod(start=period_start, end=period_end),
            {**original_metadata, "split_from": invoice_id, "split_date": split_date},
        )
        if not created:
            raise BackendServiceError(
                "Failed to create any separated invoice; the original invoice was left unchanged",
                context="Split Invoice",
            )

        try:
            self.client.table(INVOICES_TABLE).update(
                {
                    "status": InvoiceStatus.CANCELLED,
                    "notes": "Split into separate invoices by type: "
                    + ", ".join(t.value for t in created),
                    "metadata": {
                        **original_metadata,
                        "split_into": [group.invoice_id for group in created.values()],
                        "split_date": split_date,
                    },
                    "updated_at": split_date,
                }
            ).eq("id", invoice_id).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Cancel Split Invoice")

        logger.info(
            "Split invoice by type",
            extra={"invoice_id": invoice_id, "types": [t.value for t in created]},
        )
        return created

    def analyze_invoice_mix(self, invoice_id: str) -> InvoiceMixAnalysis:
        """Recommend keeping or splitting an existing invoice."""
        try:
            response = (
                self.client.table(INVOICE_ITEMS_TABLE)
                .select("cpt_code,description,unit_price,units,invoice_type")
                .eq("invoice_id", invoice_id)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Analyze Invoice")

        items = [InvoiceLineItem(**row) for row in response.data or []]
        return analyze_line_item_mix(items)

    def get_separation_stats(self, start: datetime, end: datetime) -> SeparationStats:
        """Count auto-separated and manually split invoices in a date window."""
        try:
            response = (
                self.client.table(INVOICES_TABLE)
                .select("metadata")
                .eq("organization_id", self.organization_id)
                .gte("created_at", start)
                .lte("created_at", end)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Separation Stats")

        rows = response.data or []
        stats = SeparationStats(total_invoices=len(rows))
        for row in rows:
            metadata = row.get("metadata") or {}
            if metadata.get("auto_separated"):
                stats.auto_separated += 1
            if metadata.get("split_from"):
                stats.manually_split += 1
            invoice_type = metadata.get("invoice_type")
            if invoice_type in stats.by_type:
                stats.by_type[invoice_type] += 1
        return stats


__all__ = ["InvoiceTypeSeparationService"]
