"""
Dashboard figures: headline stats, receivables aging, status mix and top clients.
"""
import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Literal, Optional, Tuple

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import handle_backend_error
from labbilling.core.invoice_calculations import is_invoice_overdue
from labbilling.schemas.billing_schema import AgingBucket, DashboardStat, InvoiceStatus, StatusCount, TopClient


logger = logging.getLogger(__name__)

DateRange = Literal["7days", "30days", "90days", "ytd"]

AGING_RPC = "get_aging_overview_data"

RANGE_DAYS = {"7days": 7, "30days": 30, "90days": 90}

STATUS_BUCKETS = ("draft", "sent", "paid", "overdue", "disputed")

INVOICE_STAT_COLUMNS = "id,total_amount,status,paid_amount,due_date,created_at"


def date_range_bounds(date_range: str, today: Optional[date] = None) -> Tuple[date, date]:
    """
    Resolve a named range to inclusive (start, end) dates ending today.

    Unknown names fall back to the last 30 days.
    """
    today = today or date.today()
    if date_range == "ytd":
        return date(today.year, 1, 1), today
    return today - timedelta(days=RANGE_DAYS.get(date_range, 30)), today


def previous_period(start: date, end: date) -> Tuple[date, date]:
    """The period of equal length immediately before ``start``."""
    return start - (end - start), start - timedelta(days=1)


def percent_change(current: float, previous: float) -> float:
    if not previous:
        return 0.0
    return (current - previous) / previous * 100


def _whole_percent(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return int((Decimal(part) * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _amount(row: Dict[str, Any], column: str) -> float:
    return float(row.get(column) or 0)


def _as_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _count_overdue(rows: List[Dict[str, Any]], as_of: date) -> int:
    overdue = 0
    for row in rows:
        due = _as_date(row.get("due_date"))
        if (
            due is not None
            and is_invoice_overdue(due, as_of)
            and row.get("status") != InvoiceStatus.PAID.value
            and _amount(row, "total_amount") > _amount(row, "paid_amount")
        ):
            overdue += 1
    return overdue


class DashboardService:
    def __init__(self, client: BackendClient, organization_id: Optional[str] = None):
        self.client = client
        self.organization_id = organization_id

    def _invoices_created_between(self, columns: str, start: date, end: date) -> List[Dict[str, Any]]:
        query = (
            self.client.table("invoices")
            .select(columns)
            .gte("created_at", start.isoformat())
            .lt("created_at", (end + timedelta(days=1)).isoformat())
        )
        if self.organization_id:
            query = query.eq("organization_id", self.organization_id)
        return query.execute().data or []

    def get_dashboard_stats(self, date_range: str = "30days", today: Optional[date] = None) -> List[DashboardStat]:
        """
        Headline invoice figures for a range, each compared to the period before it.

        Args:
            date_range: ``7days``, ``30days``, ``90days`` or ``ytd``
            today: Reference date, defaults to the current date

        Returns:
            Total invoiced, total paid, outstanding balance and overdue count
        """
        today = today or date.today()
        start, end = date_range_bounds(date_range, today)
        prev_start, prev_end = previous_period(start, end)
        try:
            current = self._invoices_created_between(INVOICE_STAT_COLUMNS, start, end)
            previous = self._invoices_created_between(INVOICE_STAT_COLUMNS, prev_start, prev_end)
        except BackendError as exc:
            handle_backend_error(exc, "Dashboard Stats")

        invoiced = sum(_amount(r, "total_amount") for r in current)
        prev_invoiced = sum(_amount(r, "total_amount") for r in previous)
        paid = sum(_amount(r, "paid_amount") for r in current)
        prev_paid = sum(_amount(r, "paid_amount") for r in previous)
        overdue = _count_overdue(current, today)
        prev_overdue = _count_overdue(previous, prev_end)

        return [
            DashboardStat(
                id="total-invoiced",
                title="Total Invoiced",
                value=invoiced,
                change=percent_change(invoiced, prev_invoiced),
                link="/invoices",
            ),
            DashboardStat(
                id="total-paid",
                title="Total Paid",
                value=paid,
                change=percent_change(paid, prev_paid),
                link="/invoices?status=paid",
            ),
            DashboardStat(
                id="outstanding-balance",
                title="Outstanding Balance",
                value=invoiced - paid,
                change=percent_change(invoiced - paid, prev_invoiced - prev_paid),
                link="/invoices?status=outstanding",
            ),
            DashboardStat(
                id="overdue-invoices",
                title="Overdue Invoices",
                value=overdue,
                change=percent_change(overdue, prev_overdue),
                link="/invoices?status=overdue",
            ),
        ]

    def get_aging_overview(self, today: Optional[date] = None) -> List[AgingBucket]:
        """Outstanding balances bucketed by days past due."""
        today = today or date.today()
        try:
            rows = self.client.rpc(AGING_RPC).data or []
        except BackendError as exc:
            handle_backend_error(exc, "Aging Overview")

        buckets = {"Current": 0.0, "1-30 Days": 0.0, "31-60 Days": 0.0, "61-90 Days": 0.0, "Over 90 Days": 0.0}
        for row in rows:
            balance = _amount(row, "total_amount") - _amount(row, "paid_amount")
            due = _as_date(row.get("due_date"))
            days_past_due = (today - due).days if due else 0
            if days_past_due <= 0:
                buckets["Current"] += balance
            elif days_past_due <= 30:
                buckets["1-30 Days"] += balance
            elif days_past_due <= 60:
                buckets["31-60 Days"] += balance
            elif days_past_due <= 90:
                buckets["61-90 Days"] += balance
            else:
                buckets["Over 90 Days"] += balance
        return [AgingBucket(label=label, value=value) for label, value in buckets.items()]

    def get_status_distribution(self, date_range: str = "30days", today: Optional[date] = None) -> List[StatusCount]:
        start, end = date_range_bounds(date_range, today)
        try:
            rows = self._invoices_created_between("id,status", start, end)
        except BackendError as exc:
            handle_backend_error(exc, "Status Distribution")

        counts = {status: 0 for status in STATUS_BUCKETS}
        for row in rows:
            status = row.get("status") or InvoiceStatus.DRAFT.value
            counts[status] = counts.get(status, 0) + 1
        return [
            StatusCount(name=status.capitalize(), count=count, percentage=_whole_percent(count, len(rows)))
            for status, count in counts.items()
        ]

    def get_top_clients(self, date_range: str = "30days", limit: int = 5, today: Optional[date] = None) -> List[TopClient]:
        """Clients ranked by invoiced value in the range, with their dispute rate."""
        start, end = date_range_bounds(date_range, today)
        try:
            rows = self._invoices_created_between("id,total_amount,status,client_id", start, end)
            client_ids = sorted({str(r["client_id"]) for r in rows if r.get("client_id")})
            names: Dict[str, str] = {}
            if client_ids:
                client_rows = (
                    self.client.table("clients").select("id,name").in_("id", client_ids).execute().data or []
                )
                names = {str(c["id"]): c["name"] for c in client_rows}
        except BackendError as exc:
            handle_backend_error(exc, "Top Clients")

        grouped: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            client_id = str(row.get("client_id") or "")
            if client_id not in names:
                logger.warning("Skipping invoice without a known client", extra={"invoice_id": row.get("id")})
                continue
            entry = grouped.setdefault(client_id, {"count": 0, "value": 0.0, "disputed": 0})
            entry["count"] += 1
            entry["value"] += _amount(row, "total_amount")
            if row.get("status") == InvoiceStatus.DISPUTED.value:
                entry["disputed"] += 1

        ranked = sorted(grouped.items(), key=lambda item: item[1]["value"], reverse=True)
        return [
            TopClient(
                id=client_id,
                name=names[client_id],
                invoice_count=entry["count"],
                total_value=entry["value"],
                dispute_rate=_whole_percent(entry["disputed"], entry["count"]),
            )
            for client_id, entry in ranked[:limit]
        ]


__all__ = [
    "AGING_RPC",
    "DashboardService",
    "DateRange",
    "date_range_bounds",
    "percent_change",
    "previous_period",
]
