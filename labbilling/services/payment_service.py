"""
Payment posting, allocation to invoices and reconciliation.

Writes are issued one after another against the backend; there is no
transaction around them. A failure part-way leaves the earlier rows in
place and is reported to the caller.
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import RecordNotFoundError, handle_backend_error
from labbilling.core.invoice_calculations import ZERO, to_money
from labbilling.core.payment_calculations import (
    allocations_balance,
    generate_idempotency_key,
    invoice_status_after_payment,
    plan_allocation,
    plan_multi_invoice_allocations,
    validate_payment_amount,
)
from labbilling.schemas.billing_schema import (
    AllocationResult,
    InvoiceStatus,
    MultiInvoicePaymentRequest,
    Payment,
    PaymentAllocation,
    PaymentCredit,
    PaymentRequest,
    PaymentStatus,
    ReconciliationAllocation,
    ReconciliationReport,
    ReconciliationRow,
)
from labbilling.services.audit_service import record_audit_event


logger = logging.getLogger(__name__)

PAYMENTS_TABLE = "payments"
ALLOCATIONS_TABLE = "payment_allocations"
CREDITS_TABLE = "payment_credits"

UNPAYABLE_STATUSES = {InvoiceStatus.DRAFT.value, InvoiceStatus.CANCELLED.value}

ReconciliationFilter = Literal["all", "unallocated", "partial", "complete"]


def _money(value: Any) -> Decimal:
    return to_money(Decimal(str(value or 0)))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class PaymentService:
    """Posts payments and keeps invoice paid amounts in step with them."""

    def __init__(self, client: BackendClient, organization_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id

    def allocate_payment(self, request: PaymentRequest, user_id: Optional[str] = None) -> AllocationResult:
        """
        Record a payment against one invoice.

        The part above the invoice balance becomes a client credit.

        Args:
            request: Invoice, amount, method and reference
            user_id: Actor recorded in the audit log

        Returns:
            AllocationResult with the new payment id, its allocation and
            any credit created

        Raises:
            ValueError: Invalid amount, duplicate payment or an invoice that
                cannot take payments
            RecordNotFoundError: Unknown invoice
        """
        if not validate_payment_amount(request.amount):
            raise ValueError("Invalid payment amount")

        key = generate_idempotency_key(
            request.invoice_id, request.amount, request.payment_method, request.reference_number
        )
        self._reject_duplicate(key)
        invoice = self._get_invoice(request.invoice_id)
        if invoice.get("status") in UNPAYABLE_STATUSES:
            raise ValueError(f"Cannot post a payment to a {invoice.get('status')} invoice")

        total = _money(invoice.get("total_amount"))
        paid = _money(invoice.get("paid_amount"))
        allocated, credit = plan_allocation(request.amount, total, paid)

        try:
            payment = self._insert_payment(
                client_id=invoice.get("client_id"),
                invoice_id=request.invoice_id,
                amount=request.amount,
                method=request.payment_method,
                reference=request.reference_number,
                status=PaymentStatus.POSTED,
                key=key,
                allocated=allocated,
            )
            allocations: List[PaymentAllocation] = []
            if allocated > ZERO:
                allocations.append(self._insert_allocation(payment["id"], request.invoice_id, allocated))
                self._apply_to_invoice(request.invoice_id, total, paid + allocated)
            if credit > ZERO:
                self._insert_credit(payment["id"], invoice.get("client_id"), credit)
        except BackendError as exc:
            logger.error(
                "Payment posting stopped part-way",
                extra={"invoice_id": request.invoice_id, "idempotency_key": key, "error": str(exc)},
            )
            handle_backend_error(exc, "Allocate Payment")

        record_audit_event(
            self.client,
            "payment",
            str(payment["id"]),
            "payment_allocated",
            {"invoice_id": request.invoice_id, "amount": request.amount, "allocated": allocated, "credit": credit},
            organization_id=self.organization_id,
            user_id=user_id,
        )
        logger.info(
            "Posted payment",
            extra={"payment_id": payment["id"], "invoice_id": request.invoice_id, "amount": str(request.amount)},
        )
        return AllocationResult(
            payment_id=str(payment["id"]),
            allocations=allocations,
            credit_amount=credit,
            status=PaymentStatus.POSTED,
        )

    def allocate_multi_invoice(
        self, request: MultiInvoicePaymentRequest, user_id: Optional[str] = None
    ) -> AllocationResult:
        """
        Spread one client payment over several invoices in the order given.

        Anything left after every listed invoice is paid stays on the
        payment as unallocated and the payment remains pending.
        """
        if not validate_payment_amount(request.amount):
            raise ValueError("Invalid payment amount")
        seen = set()
        for invoice_id in request.invoice_ids:
            if invoice_id in seen:
                raise ValueError(f"Invoice {invoice_id} is listed more than once")
            seen.add(invoice_id)

        key = generate_idempotency_key(
            ",".join(request.invoice_ids), request.amount, request.payment_method, request.reference_number
        )
        self._reject_duplicate(key)

        try:
            rows = (
                self.client.table("invoices")
                .select("id,client_id,status,total_amount,paid_amount")
                .in_("id", request.invoice_ids)
                .execute()
                .data
                or []
            )
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Invoices For Payment")

        by_id = {str(row["id"]): row for row in rows}
        ordered = []
        for invoice_id in request.invoice_ids:
            row = by_id.get(str(invoice_id))
            if row is None:
                raise RecordNotFoundError(f"Invoice with ID {invoice_id} not found")
            if str(row.get("client_id")) != str(request.client_id):
                raise ValueError(f"Invoice {invoice_id} does not belong to client {request.client_id}")
            if row.get("status") in UNPAYABLE_STATUSES:
                raise ValueError(f"Cannot post a payment to a {row.get('status')} invoice")
            ordered.append((str(invoice_id), _money(row.get("total_amount")), _money(row.get("paid_amount"))))

        planned, remainder = plan_multi_invoice_allocations(request.amount, ordered)
        status = PaymentStatus.POSTED if remainder == ZERO else PaymentStatus.PENDING
        totals = {invoice_id: total for invoice_id, total, _ in ordered}

        try:
            payment = self._insert_payment(
                client_id=request.client_id,
                invoice_id=None,
                amount=request.amount,
                method=request.payment_method,
                reference=request.reference_number,
                status=status,
                key=key,
                allocated=request.amount - remainder,
            )
            allocations = []
            for plan in planned:
                allocations.append(self._insert_allocation(payment["id"], plan.invoice_id, plan.amount))
                self._apply_to_invoice(plan.invoice_id, totals[plan.invoice_id], plan.new_paid_amount)
        except BackendError as exc:
            logger.error(
                "Multi-invoice payment stopped part-way",
                extra={"client_id": request.client_id, "idempotency_key": key, "error": str(exc)},
            )
            handle_backend_error(exc, "Allocate Multi-Invoice Payment")

        record_audit_event(
            self.client,
            "payment",
            str(payment["id"]),
            "payment_allocated",
            {
                "invoice_ids": [plan.invoice_id for plan in planned],
                "amount": request.amount,
                "unallocated": remainder,
            },
            organization_id=self.organization_id,
            user_id=user_id,
        )
        return AllocationResult(
            payment_id=str(payment["id"]),
            allocations=allocations,
            unallocated_amount=remainder,
            status=status,
        )

    def verify_payment_integrity(self, payment_id: str) -> bool:
        """True when a payment's allocations plus credits equal its amount."""
        try:
            payment = (
                self.client.table(PAYMENTS_TABLE)
                .select("id,amount")
                .eq("id", payment_id)
                .maybe_single()
                .execute()
                .data
            )
            if payment is None:
                raise RecordNotFoundError(f"Payment with ID {payment_id} not found")
            allocations = (
                self.client.table(ALLOCATIONS_TABLE)
                .select("allocated_amount")
                .eq("payment_id", payment_id)
                .execute()
                .data
                or []
            )
            credits = (
                self.client.table(CREDITS_TABLE)
                .select("credit_amount")
                .eq("payment_id", payment_id)
                .execute()
                .data
                or []
            )
        except BackendError as exc:
            handle_backend_error(exc, "Verify Payment")

        credit_total = sum((_money(c.get("credit_amount")) for c in credits), ZERO)
        balanced = allocations_balance(
            _money(payment.get("amount")),
            (_money(a.get("allocated_amount")) for a in allocations),
            credit_total,
        )
        if not balanced:
            logger.warning("Payment allocations do not balance", extra={"payment_id": payment_id})
        return balanced

    def get_payment(self, payment_id: str) -> Payment:
        try:
            row = (
                self.client.table(PAYMENTS_TABLE)
                .select("*")
                .eq("id", payment_id)
                .maybe_single()
                .execute()
                .data
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Payment")
        if row is None:
            raise RecordNotFoundError(f"Payment with ID {payment_id} not found")
        return Payment(**row)

    def list_payments(self, client_id: Optional[str] = None, limit: int = 100) -> List[Payment]:
        query = self.client.table(PAYMENTS_TABLE).select("*")
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        if client_id:
            query = query.eq("client_id", client_id)
        try:
            rows = query.order("payment_date", ascending=False).limit(limit).execute().data or []
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Payments")
        return [Payment(**row) for row in rows]

    def get_client_credits(self, client_id: str) -> List[PaymentCredit]:
        """Available credits for a client, oldest first."""
        try:
            rows = (
                self.client.table(CREDITS_TABLE)
                .select("*")
                .eq("client_id", client_id)
                .eq("status", "available")
                .gt("remaining_credit", 0)
                .order("created_at")
                .execute()
                .data
                or []
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Client Credits")
        return [PaymentCredit(**row) for row in rows]

    def get_reconciliation_report(
        self,
        start_date: date,
        end_date: date,
        status_filter: ReconciliationFilter = "all",
    ) -> ReconciliationReport:
        """
        Payments in a date range with what has been allocated from each.

        Args:
            start_date: First payment date included
            end_date: Last payment date included
            status_filter: ``unallocated`` (nothing allocated), ``partial``,
                ``complete`` or ``all``

        Returns:
            ReconciliationReport with one row per payment and column totals
        """
        query = (
            self.client.table(PAYMENTS_TABLE)
            .select("*")
            .gte("payment_date", start_date)
            .lte("payment_date", end_date)
        )
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        try:
            payments = query.order("payment_date", ascending=False).execute().data or []
            payment_ids = [p["id"] for p in payments]
            allocations = self._rows_in(ALLOCATIONS_TABLE, "payment_id", payment_ids, "payment_id,invoice_id,allocated_amount,created_at")
            invoice_numbers = {
                str(row["id"]): row.get("invoice_number")
                for row in self._rows_in("invoices", "id", {a["invoice_id"] for a in allocations}, "id,invoice_number")
            }
            client_names = {
                str(row["id"]): row.get("name")
                for row in self._rows_in("clients", "id", {p.get("client_id") for p in payments if p.get("client_id")}, "id,name")
            }
        except BackendError as exc:
            handle_backend_error(exc, "Payment Reconciliation")

        by_payment: Dict[str, List[Dict[str, Any]]] = {}
        for allocation in allocations:
            by_payment.setdefault(str(allocation["payment_id"]), []).append(allocation)

        report = ReconciliationReport()
        for payment in payments:
            payment_allocations = by_payment.get(str(payment["id"]), [])
            amount = _money(payment.get("amount"))
            allocated = sum((_money(a.get("allocated_amount")) for a in payment_allocations), ZERO)
            unallocated = amount - allocated

            if status_filter == "unallocated" and unallocated != amount:
                continue
            if status_filter == "partial" and not (ZERO < unallocated < amount):
                continue
            if status_filter == "complete" and unallocated != ZERO:
                continue

            report.rows.append(
                ReconciliationRow(
                    payment_id=str(payment["id"]),
                    payment_number=payment.get("payment_number"),
                    payment_date=payment.get("payment_date"),
                    payment_method=payment.get("payment_method"),
                    client_name=client_names.get(str(payment.get("client_id"))) or "Unknown",
                    payment_amount=amount,
                    allocated_amount=allocated,
                    unallocated_amount=unallocated,
                    status=payment.get("status"),
                    allocations=[
                        ReconciliationAllocation(
                            invoice_number=invoice_numbers.get(str(a["invoice_id"])) or "Unknown",
                            allocated_amount=_money(a.get("allocated_amount")),
                            allocation_date=a.get("created_at"),
                        )
                        for a in payment_allocations
                    ],
                )
            )
            report.payment_amount += amount
            report.allocated_amount += allocated
            report.unallocated_amount += unallocated
        report.count = len(report.rows)
        return report

    # -- helpers ------------------------------------------------------------

    def _rows_in(self, table: str, column: str, values: Any, columns: str) -> List[Dict[str, Any]]:
        values = sorted(str(v) for v in values)
        if not values:
            return []
        return self.client.table(table).select(columns).in_(column, values).execute().data or []

    def _reject_duplicate(self, key: str) -> None:
        try:
            existing = (
                self.client.table(PAYMENTS_TABLE)
                .select("id")
                .eq("idempotency_key", key)
                .limit(1)
                .execute()
                .data
            )
        except BackendError as exc:
            handle_backend_error(exc, "Check Duplicate Payment")
        if existing:
            logger.warning("Duplicate payment rejected", extra={"idempotency_key": key})
            raise ValueError("Duplicate payment detected")

    def _get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        try:
            row = (
                self.client.table("invoices")
                .select("id,client_id,invoice_number,status,total_amount,paid_amount")
                .eq("id", invoice_id)
                .maybe_single()
                .execute()
                .data
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Invoice For Payment")
        if row is None:
            raise RecordNotFoundError(f"Invoice with ID {invoice_id} not found")
        return row

    def _insert_payment(
        self,
        client_id: Optional[str],
        invoice_id: Optional[str],
        amount: Decimal,
        method: str,
        reference: Optional[str],
        status: PaymentStatus,
        key: str,
        allocated: Decimal,
    ) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "client_id": client_id,
            "invoice_id": invoice_id,
            "amount": amount,
            "allocated_amount": allocated,
            "payment_method": method,
            "reference_number": reference,
            "payment_date": date.today(),
            "status": status,
            "idempotency_key": key,
        }
        if self.organization_id:
            row["organization_id"] = self.organization_id
        return self.client.table(PAYMENTS_TABLE).insert(row).single().execute().data

    def _insert_allocation(self, payment_id: str, invoice_id: str, amount: Decimal) -> PaymentAllocation:
        row = (
            self.client.table(ALLOCATIONS_TABLE)
            .insert({"payment_id": payment_id, "invoice_id": invoice_id, "allocated_amount": amount})
            .single()
            .execute()
            .data
        )
        return PaymentAllocation(**{**row, "payment_id": str(row["payment_id"]), "invoice_id": str(row["invoice_id"])})

    def _apply_to_invoice(self, invoice_id: str, total: Decimal, new_paid: Decimal) -> None:
        status = invoice_status_after_payment(total, new_paid)
        changes: Dict[str, Any] = {"paid_amount": new_paid, "status": status}
        if status == InvoiceStatus.PAID:
            changes["paid_at"] = _now_iso()
        self.client.table("invoices").update(changes).eq("id", invoice_id).execute()

    def _insert_credit(self, payment_id: str, client_id: Optional[str], amount: Decimal) -> None:
        row: Dict[str, Any] = {
            "payment_id": payment_id,
            "client_id": client_id,
            "credit_amount": amount,
            "remaining_credit": amount,
            "status": "available",
        }
        if self.organization_id:
            row["organization_id"] = self.organization_id
        self.client.table(CREDITS_TABLE).insert(row).execute()
        logger.info("Created overpayment credit", extra={"payment_id": payment_id, "amount": str(amount)})


__all__ = ["ALLOCATIONS_TABLE", "CREDITS_TABLE", "PAYMENTS_TABLE", "PaymentService"]
