"""
Dispute ticket management for contested invoices and line items.
"""
import logging
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from labbilling.core.backend_client import BackendClient, BackendError
from labbilling.core.errors import RecordNotFoundError, handle_backend_error, with_auth_retry
from labbilling.schemas.dispute_schema import (
    CLOSING_STATUSES,
    BulkDisputeResult,
    Dispute,
    DisputeCategory,
    DisputeCreate,
    DisputeFilters,
    DisputeMessage,
    DisputeMessageCreate,
    DisputePage,
    DisputePriority,
    DisputeStats,
    DisputeStatus,
)
from labbilling.services.audit_service import record_audit_event, utc_now_iso
from labbilling.services.invoice_service import INVOICE_ITEMS_TABLE, INVOICES_TABLE


logger = logging.getLogger(__name__)

DISPUTES_TABLE = "disputes"
DISPUTE_MESSAGES_TABLE = "dispute_messages"

_SECONDS_PER_DAY = 60 * 60 * 24


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class DisputeService:
    """Service layer for dispute tickets of one organization."""

    def __init__(self, client: BackendClient, organization_id: str):
        self.client = client
        self.organization_id = organization_id

    def create_dispute(self, data: DisputeCreate) -> Dispute:
        """
        Open a dispute ticket.

        Numbers tickets ``DSP-YYYYMM-NNNN``, flags the disputed line item
        (when one is given) and writes an audit row.

        Raises:
            BackendServiceError: If the ticket cannot be inserted.
        """
        dispute_number = self._generate_dispute_number()
        row = data.model_dump(exclude_none=True)
        row.update(
            organization_id=self.organization_id,
            dispute_number=dispute_number,
            status=data.status or DisputeStatus.OPEN,
            priority=data.priority or DisputePriority.NORMAL,
            source=data.source or "portal",
            created_at=utc_now_iso(),
        )

        try:
            response = self.client.table(DISPUTES_TABLE).insert(row).single().execute()
        except BackendError as exc:
            handle_backend_error(exc, "Create Dispute")

        dispute = Dispute(**response.data)
        if data.invoice_item_id:
            self._set_item_dispute_flag(data.invoice_item_id, True, data.reason_details)

        self._audit(dispute.id, "created", f"Dispute created: {data.reason_details}")
        logger.info(
            "Dispute created",
            extra={"dispute_id": dispute.id, "dispute_number": dispute_number},
        )
        return dispute

    def get_disputes(self, filters: Optional[DisputeFilters] = None) -> DisputePage:
        filters = filters or DisputeFilters()
        query = (
            self.client.table(DISPUTES_TABLE)
            .select("*", count="exact")
            .eq("organization_id", self.organization_id)
        )
        if filters.status:
            query = query.eq("status", filters.status)
        if filters.priority:
            query = query.eq("priority", filters.priority)
        if filters.client_id:
            query = query.eq("client_id", filters.client_id)
        if filters.assigned_to:
            query = query.eq("assigned_to", filters.assigned_to)

        offset = (filters.page - 1) * filters.page_size
        query = query.order(filters.sort_by, ascending=filters.sort_order == "asc")
        query = query.range(offset, offset + filters.page_size - 1)

        try:
            response = with_auth_retry(self.client, query.execute)
        except BackendError as exc:
            handle_backend_error(exc, "Fetch Disputes")

        rows = response.data or []
        return DisputePage(
            data=[Dispute(**row) for row in rows],
            total=response.count or 0,
            page=filters.page,
            page_size=filters.page_size,
        )

    def get_dispute(self, dispute_id: str) -> Dispute:
        try:
            response = (
                self.client.table(DISPUTES_TABLE)
                .select("*")
                .eq("id", dispute_id)
                .eq("organization_id", self.organization_id)
                .maybe_single()
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Dispute")

        if response.data is None:
            raise RecordNotFoundError(f"Dispute {dispute_id} not found")
        return Dispute(**response.data)

    def update_dispute_status(
        self,
        dispute_id: str,
        status: DisputeStatus,
        resolution: Optional[str] = None,
    ) -> Dispute:
        """
        Change a ticket's status.

        Resolving or rejecting stamps ``resolved_at``, stores the resolution
        and clears the dispute flag on the line item.
        """
        now = utc_now_iso()
        changes: Dict[str, Any] = {"status": status, "updated_at": now}
        if status in CLOSING_STATUSES:
            changes["resolved_at"] = now
            changes["resolution_details"] = resolution

        try:
            response = (
                self.client.table(DISPUTES_TABLE)
                .update(changes)
                .eq("id", dispute_id)
                .eq("organization_id", self.organization_id)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Update Dispute Status")

        if not response.data:
            raise RecordNotFoundError(f"Dispute {dispute_id} not found")
        dispute = Dispute(**response.data[0])

        if status in CLOSING_STATUSES and dispute.invoice_item_id:
            self._set_item_dispute_flag(
                dispute.invoice_item_id, False, resolution or "Dispute resolved"
            )

        self._audit(dispute_id, "status_changed", f"Status changed to {status.value}")
        return dispute

    def assign_dispute(self, dispute_id: str, user_id: str) -> Dispute:
        """Assign a ticket to a reviewer; this moves it to ``in_review``."""
        if not user_id:
            raise ValueError("user_id is required")
        try:
            response = (
                self.client.table(DISPUTES_TABLE)
                .update(
                    {
                        "assigned_to": user_id,
                        "status": DisputeStatus.IN_REVIEW,
                        "updated_at": utc_now_iso(),
                    }
                )
                .eq("id", dispute_id)
                .eq("organization_id", self.organization_id)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Assign Dispute")

        if not response.data:
            raise RecordNotFoundError(f"Dispute {dispute_id} not found")
        self._audit(dispute_id, "assigned", f"Assigned to user {user_id}")
        return Dispute(**response.data[0])

    def add_message(self, dispute_id: str, data: DisputeMessageCreate) -> DisputeMessage:
        row = {
            "dispute_id": dispute_id,
            "user_id": data.user_id,
            "message": data.message,
            "attachments": data.attachments,
            "created_at": utc_now_iso(),
        }
        try:
            response = self.client.table(DISPUTE_MESSAGES_TABLE).insert(row).single().execute()
            self.client.table(DISPUTES_TABLE).update({"updated_at": utc_now_iso()}).eq(
                "id", dispute_id
            ).execute()
        except BackendError as exc:
            handle_backend_error(exc, "Add Dispute Message")
        return DisputeMessage(**response.data)

    def get_messages(self, dispute_id: str) -> List[DisputeMessage]:
        try:
            response = (
                self.client.table(DISPUTE_MESSAGES_TABLE)
                .select("*")
                .eq("dispute_id", dispute_id)
                .order("created_at", ascending=True)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Get Dispute Messages")
        return [DisputeMessage(**row) for row in response.data or []]

    def create_bulk_disputes(
        self,
        invoice_item_ids: List[str],
        category: DisputeCategory,
        reason: str,
    ) -> BulkDisputeResult:
        """
        Open one dispute per line item.

        Items are processed independently: a missing item or a failed
        insert is counted and reported, and the rest continue.
        """
        result = BulkDisputeResult()
        for item_id in invoice_item_ids:
            try:
                item = (
                    self.client.table(INVOICE_ITEMS_TABLE)
                    .select("invoice_id,line_total,units,unit_price,accession_number,cpt_code")
                    .eq("id", item_id)
                    .maybe_single()
                    .execute()
                    .data
                )
                if item is None:
                    result.failed += 1
                    result.errors.append(f"Item {item_id} not found")
                    continue

                invoice = (
                    self.client.table(INVOICES_TABLE)
                    .select("client_id")
                    .eq("id", item["invoice_id"])
                    .maybe_single()
                    .execute()
                    .data
                )
                self.create_dispute(
                    DisputeCreate(
                        invoice_id=item["invoice_id"],
                        invoice_item_id=item_id,
                        client_id=(invoice or {}).get("client_id"),
                        disputed_amount=_line_total(item),
                        reason_category=category,
                        reason_details=(
                            f"{reason} - Accession: {item.get('accession_number')}, "
                            f"CPT: {item.get('cpt_code')}"
                        ),
                        priority=DisputePriority.NORMAL,
                    )
                )
                result.created += 1
            except (BackendError, LookupError, RuntimeError, ValueError) as exc:
                result.failed += 1
                result.errors.append(f"Failed to create dispute for item {item_id}: {exc}")

        logger.info(
            "Bulk dispute creation finished",
            extra={"created": result.created, "failed": result.failed},
        )
        return result

    def get_dispute_stats(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> DisputeStats:
        """Summarize tickets created in an optional date window."""
        query = (
            self.client.table(DISPUTES_TABLE)
            .select("*")
            .eq("organization_id", self.organization_id)
        )
        if start:
            query = query.gte("created_at", start)
        if end:
            query = query.lt("created_at", end + timedelta(days=1))
        try:
            response = query.execute()
        except BackendError as exc:
            handle_backend_error(exc, "Get Dispute Stats")

        disputes = response.data or []
        stats = DisputeStats(total=len(disputes))
        resolution_seconds = 0.0
        resolved_count = 0

        for dispute in disputes:
            status = dispute.get("status")
            if status in ("open", "in_review", "resolved", "rejected"):
                setattr(stats, status, getattr(stats, status) + 1)

            stats.total_disputed_amount += Decimal(str(dispute.get("disputed_amount") or 0))

            category = dispute.get("reason_category") or DisputeCategory.OTHER.value
            stats.by_category[category] = stats.by_category.get(category, 0) + 1
            priority = dispute.get("priority") or DisputePriority.NORMAL.value
            stats.by_priority[priority] = stats.by_priority.get(priority, 0) + 1

            created_at = _parse_timestamp(dispute.get("created_at"))
            resolved_at = _parse_timestamp(dispute.get("resolved_at"))
            if created_at and resolved_at:
                resolution_seconds += (resolved_at - created_at).total_seconds()
                resolved_count += 1

        if resolved_count:
            average_days = Decimal(str(resolution_seconds / resolved_count / _SECONDS_PER_DAY))
            stats.avg_resolution_time = int(average_days.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return stats

    def _generate_dispute_number(self) -> str:
        today = date.today()
        try:
            response = (
                self.client.table(DISPUTES_TABLE)
                .select("id", count="exact")
                .eq("organization_id", self.organization_id)
                .gte("created_at", today.replace(day=1))
                .limit(1)
                .execute()
            )
        except BackendError as exc:
            handle_backend_error(exc, "Generate Dispute Number")
        return f"DSP-{today:%Y%m}-{(response.count or 0) + 1:04d}"

    def _set_item_dispute_flag(self, item_id: str, is_disputed: bool, reason: str) -> None:
        now = utc_now_iso()
        changes: Dict[str, Any] = {
            "is_disputed": is_disputed,
            "dispute_reason": reason if is_disputed else None,
            "dispute_date": now if is_disputed else None,
        }
        if not is_disputed:
            changes["dispute_resolved_date"] = now
            changes["dispute_resolution"] = reason
        try:
            self.client.table(INVOICE_ITEMS_TABLE).update(changes).eq("id", item_id).execute()
        except BackendError as exc:
            logger.warning(
                "Failed to update line item dispute flag",
                extra={"invoice_item_id": item_id, "error": str(exc)},
            )

    def _audit(self, dispute_id: str, action: str, message: str) -> None:
        record_audit_event(
            self.client,
            "dispute",
            dispute_id,
            action,
            {"message": message},
            organization_id=self.organization_id,
        )


def _line_total(item: Dict[str, Any]) -> Decimal:
    if item.get("line_total") is not None:
        return Decimal(str(item["line_total"]))
    return Decimal(str(item.get("units") or 0)) * Decimal(str(item.get("unit_price") or 0))


__all__ = ["DISPUTES_TABLE", "DISPUTE_MESSAGES_TABLE", "DisputeService"]
