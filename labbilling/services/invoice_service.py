"""
Invoice CRUD and lifecycle (status machine) operations.
"""
import logging
import math
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from labbilling.core.backend_client import BackendClient, BackendError, quote_filter_value
from labbilling.core.errors import RecordNotFoundError, handle_backend_error, with_auth_retry
from labbilling.core.invoice_calculations import (
    ChargeLine,
    calculate_due_date,
    calculate_invoice_total,
    calculate_late_fee,
    is_invoice_overdue,
    to_money,
    validate_invoice_data,
)
from labbilling.schemas.billing_schema import (
    FilterOptions,
    Invoice,
    InvoiceCreate,
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceUpdate,
    LateFee,
    PaginatedResponse,
)
from labbilling.services.audit_service import record_audit_event, utc_now_iso


logger = logging.getLogger(__name__)

INVOICES_TABLE = "invoices"
INVOICE_ITEMS_TABLE = "invoice_items"

VALID_TRANSITIONS: Dict[InvoiceStatus, List[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: [InvoiceStatus.SENT, InvoiceStatus.CANCELLED],
    InvoiceStatus.SENT: [
        InvoiceStatus.VIEWED,
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.DISPUTED,
        InvoiceStatus.CANCELLED,
    ],
    InvoiceStatus.VIEWED: [
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.DISPUTED,
        InvoiceStatus.CANCELLED,
    ],
    InvoiceStatus.PARTIAL: [
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.DISPUTED,
        InvoiceStatus.CANCELLED,
    ],
    # paid invoices can still be disputed
    InvoiceStatus.PAID: [InvoiceStatus.DISPUTED],
    InvoiceStatus.OVERDUE: [
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.DISPUTED,
        InvoiceStatus.CANCELLED,
    ],
    InvoiceStatus.DISPUTED: [InvoiceStatus.SENT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED],
    InvoiceStatus.CANCELLED: [],
}

# Fields that stay editable once an invoice has left draft.
POST_DRAFT_EDITABLE_FIELDS = frozenset(
    {"status", "paid_amount", "write_off_amount", "write_off_reason"}
)

SORT_COLUMNS = {
    "invoice_number": "invoice_number",
    "client": "client_id",
    "date_created": "created_at",
    "created_at": "created_at",
    "date_due": "due_date",
    "due_date": "due_date",
    "total": "total_amount",
    "paid": "paid_amount",
    "status": "status",
}

_STATUS_TIMESTAMPS = {
    InvoiceStatus.SENT: "sent_at",
    InvoiceStatus.VIEWED: "viewed_at",
    InvoiceStatus.PAID: "paid_at",
}


def can_transition(current: InvoiceStatus, new: InvoiceStatus) -> bool:
    return new in VALID_TRANSITIONS.get(current, [])


def _charge_line(item: InvoiceLineItem) -> ChargeLine:
    return ChargeLine(
        quantity=Decimal(item.units),
        unit_price=item.unit_price,
        description=item.description or "",
        cpt_code=item.cpt_code or None,
    )


class InvoiceService:
    """
    Service layer for invoices and their line items.

    The invoice number is assigned by the backend. Totals are recomputed
    here whenever line items are added to a draft.
    """

    def __init__(self, client: BackendClient, organization_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id

    def list_invoices(self, filters: Optional[FilterOptions] = None) -> PaginatedResponse[Invoice]:
        """
        List invoices with search, filters, sorting and pagination.

        Args:
            filters: Search text (matched against the invoice number), status
                and client id lists, created-date bounds, sort key and page.

        Returns:
            A page of invoices with their line items.
        """
        filters = filters or FilterOptions()
        query = self.client.table(INVOICES_TABLE).select("*", count="exact")
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        if filters.search:
            query = query.or_(f"invoice_number.ilike.{quote_filter_value(f'%{filters.search}%')}")
        if filters.status:
            query = query.in_("status", filters.status)
        if filters.client_ids:
            query = query.in_("client_id", filters.client_ids)
        if filters.date_from:
            query = query.gte("created_at", filters.date_from)
        if filters.date_to:
            query = query.lt("created_at", filters.date_to + timedelta(days=1))

        if filters.sort_by:
            column = SORT_COLUMNS.get(filters.sort_by, "created_at")
            query = query.order(column, ascending=filters.sort_direction == "asc")
        else:
            query = query.order("created_at", ascending=False)

        start = (filters.page - 1) * filters.limit
        query = query.range(start, start + filters.limit - 1)

        try:
            response = with_auth_retry(self.client, query.execute)
            rows = response.data or []
            items_by_invoice = self._load_items([row["id"] for row in rows])
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Invoices")

        invoices = [
            Invoice(**row, items=items_by_invoice.get(row["id"], []))
            for row in rows
        ]
        total = response.count if response.count is not None else len(invoices)
        return PaginatedResponse[Invoice](
            data=invoices,
            total=total,
            page=filters.page,
            limit=filters.limit,
            total_pages=math.ceil(total / filters.limit) if total else 0,
        )

    def _load_items(self, invoice_ids: List[str]) -> Dict[str, List[InvoiceLineItem]]:
        if not invoice_ids:
            return {}
        response = (
            self.client.table(INVOICE_ITEMS_TABLE)
            .select("*")
            .in_("invoice_id", invoice_ids)
            .order("service_date")
            .execute()
        )
        grouped: Dict[str, List[InvoiceLineItem]] = {}
        for row in response.data or []:
            grouped.setdefault(row["invoice_id"], []).append(InvoiceLineItem(**row))
        return grouped

    def get_invoice(self, invoice_id: str) -> Invoice:
        """
        Fetch one invoice with its line items.

        Raises:
            RecordNotFoundError: If no invoice has this id.
        """
        query = self.client.table(INVOICES_TABLE).select("*").eq("id", invoice_id).maybe_single()
        try:
            response = with_auth_retry(self.client, query.execute)
            if response.data is None:
                raise RecordNotFoundError(f"Invoice with ID {invoice_id} not found")
            items = self._load_items([invoice_id]).get(invoice_id, [])
        except BackendError as exc:
            handle_backend_error(exc, "Get Invoice by ID")

        return Invoice(**response.data, items=items)

    def create_invoice(self, data: InvoiceCreate) -> Invoice:
        """
        Create an empty draft invoice.

        The invoice number is assigned by the backend on insert. The due date
        defaults to 30 days after the issue date.
        """
        if not data.client_id:
            raise ValueError("Client ID is required")

        issue_date = data.issue_date or date.today()
        due_date = data.due_date or calculate_due_date(issue_date)
        if due_date < issue_date:
            raise ValueError("Due date cannot be before the issue date")

        row = {
            "organization_id": self.organization_id,
            "client_id": data.client_id,
            "clinic_id": data.clinic_id,
            "issue_date": issue_date,
            "due_date": due_date,
            "status": InvoiceStatus.DRAFT,
            "invoice_type": data.invoice_type,
            "notes": data.notes,
            "subtotal": 0,
            "total_amount": 0,
            "paid_amount": 0,
        }
        try:
            response = self.client.table(INVOICES_TABLE).insert(row).single().execute()
        except BackendError as exc:
            handle_backend_error(exc, "Create Invoice")

        logger.info("Created draft invoice", extra={"invoice_id": response.data["id"]})
        return self.get_invoice(response.data["id"])

    def update_invoice(self, invoice_id: str, data: InvoiceUpdate) -> Invoice:
        """
        Apply a partial update.

        Only draft invoices accept arbitrary edits. Past draft, only status
        and payment fields may change unless ``force_edit`` is set.

        Raises:
            ValueError: If a locked field is edited on a non-draft invoice.
        """
        current = self.get_invoice(invoice_id)
        changes = data.model_dump(exclude_unset=True)
        force_edit = changes.pop("force_edit", False)

        if current.status is not InvoiceStatus.DRAFT and not force_edit:
            locked = sorted(set(changes) - POST_DRAFT_EDITABLE_FIELDS)
            if locked:
                raise ValueError(
                    f"Cannot edit {', '.join(locked)} on a {current.status.value} invoice. "
                    "Invoice must be in draft status."
                )

        if not changes:
            return current

        changes["updated_at"] = utc_now_iso()
        try:
            self.client.table(INVOICES_TABLE).update(changes).eq("id", invoice_id).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Update Invoice")
        return self.get_invoice(invoice_id)

    def update_status(
        self,
        invoice_id: str,
        new_status: InvoiceStatus,
        freeze_prices: bool = False,
        user_id: Optional[str] = None,
    ) -> Invoice:
        """
        Move an invoice to ``new_status`` if the transition is allowed.

        The first move into sent, viewed or paid stamps the matching
        timestamp. ``freeze_prices`` pins the current totals on draft to
        sent. A status-change audit row is written when ``user_id`` is
        given.

        Raises:
            ValueError: If the transition is not allowed.
        """
        current = self.get_invoice(invoice_id)
        if not can_transition(current.status, new_status):
            raise ValueError(
                f"Invalid status transition from {current.status.value} to {new_status.value}"
            )

        now = utc_now_iso()
        changes: Dict[str, Any] = {"status": new_status, "updated_at": now}
        timestamp_field = _STATUS_TIMESTAMPS.get(new_status)
        if timestamp_field and getattr(current, timestamp_field) is None:
            changes[timestamp_field] = now

        if freeze_prices and current.status is InvoiceStatus.DRAFT and new_status is InvoiceStatus.SENT:
            changes["subtotal"] = current.subtotal
            changes["total_amount"] = current.total_amount

        try:
            self.client.table(INVOICES_TABLE).update(changes).eq("id", invoice_id).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Update Invoice Status")

        if user_id:
            record_audit_event(
                self.client,
                "invoice",
                invoice_id,
                "invoice_status_change",
                {"from_status": current.status.value, "to_status": new_status.value},
                organization_id=self.organization_id,
                user_id=user_id,
            )
        logger.info(
            "Invoice status changed",
            extra={"invoice_id": invoice_id, "from_status": current.status.value, "to_status": new_status.value},
        )
        return self.get_invoice(invoice_id)

    def finalize_invoice(self, invoice_id: str, user_id: Optional[str] = None) -> Invoice:
        """Send a draft invoice, locking its prices."""
        return self.update_status(invoice_id, InvoiceStatus.SENT, freeze_prices=True, user_id=user_id)

    def revert_to_draft(self, invoice_id: str, reason: str) -> Invoice:
        current = self.get_invoice(invoice_id)
        if current.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED):
            raise ValueError(f"Cannot revert a {current.status.value} invoice to draft")

        changes = {
            "status": InvoiceStatus.DRAFT,
            "sent_at": None,
            "viewed_at": None,
            "updated_at": utc_now_iso(),
        }
        try:
            self.client.table(INVOICES_TABLE).update(changes).eq("id", invoice_id).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Revert Invoice to Draft")

        record_audit_event(
            self.client,
            "invoice",
            invoice_id,
            "invoice_reverted_to_draft",
            {"from_status": current.status.value, "reason": reason},
            organization_id=self.organization_id,
        )
        return self.get_invoice(invoice_id)

    def add_line_items(self, invoice_id: str, items: List[InvoiceLineItem]) -> Invoice:
        """
        Append line items to a draft invoice and recompute its totals.

        Subtotal and total become units x unit price summed over every item
        now on the invoice.

        Raises:
            ValueError: If the invoice is not a draft or an item is invalid.
        """
        current = self.get_invoice(invoice_id)
        if current.status is not InvoiceStatus.DRAFT:
            raise ValueError("Line items can only be added to draft invoices")
        errors = validate_invoice_data(current.client_id, [_charge_line(item) for item in items])
        if errors:
            raise ValueError("; ".join(errors))

        rows = [
            item.model_dump(exclude={"id"}, exclude_none=True)
            | {"invoice_id": invoice_id, "organization_id": self.organization_id}
            for item in items
        ]
        try:
            self.client.table(INVOICE_ITEMS_TABLE).insert(rows, returning=False).execute()
            stored = self._load_items([invoice_id]).get(invoice_id, [])
            totals = calculate_invoice_total([_charge_line(item) for item in stored])
            (
                self.client.table(INVOICES_TABLE)
                .update({"subtotal": totals.subtotal, "total_amount": totals.total, "updated_at": utc_now_iso()})
                .eq("id", invoice_id)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Add Invoice Items")

        logger.info(
            "Added invoice line items",
            extra={"invoice_id": invoice_id, "added": len(rows), "total_amount": str(totals.total)},
        )
        return self.get_invoice(invoice_id)

    def get_late_fee(self, invoice_id: str, as_of: Optional[date] = None) -> LateFee:
        """Late fee accrued on the unpaid balance of an overdue invoice."""
        invoice = self.get_invoice(invoice_id)
        as_of = as_of or date.today()
        balance = max(invoice.balance_due, Decimal("0"))

        days_overdue = 0
        if (
            invoice.due_date
            and invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED)
            and is_invoice_overdue(invoice.due_date, as_of)
        ):
            days_overdue = (as_of - invoice.due_date).days

        return LateFee(
            invoice_id=invoice_id,
            balance_due=to_money(balance),
            days_overdue=days_overdue,
            late_fee=calculate_late_fee(balance, days_overdue),
        )

    def delete_invoice(self, invoice_id: str) -> None:
        """
        Delete a draft invoice and its line items.

        Invoices that have been sent must be cancelled instead, so the
        number stays accounted for.
        """
        current = self.get_invoice(invoice_id)
        if current.status is not InvoiceStatus.DRAFT:
            raise ValueError(
                f"Cannot delete a {current.status.value} invoice; cancel it instead"
            )
        try:
            self.client.table(INVOICE_ITEMS_TABLE).delete().eq("invoice_id", invoice_id).execute()
            self.client.table(INVOICES_TABLE).delete().eq("id", invoice_id).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Delete Invoice")
        logger.info("Deleted draft invoice", extra={"invoice_id": invoice_id})


__all__ = [
    "INVOICES_TABLE",
    "INVOICE_ITEMS_TABLE",
    "InvoiceService",
    "VALID_TRANSITIONS",
    "can_transition",
]
