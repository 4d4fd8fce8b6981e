from datetime import date
from decimal import Decimal

import pytest

from labbilling.core.backend_client import NO_ROWS_CODE, BackendError
from labbilling.core.errors import RecordNotFoundError
from labbilling.core.session_store import Session
from labbilling.schemas.dispute_schema import (
    DisputeCategory,
    DisputeCreate,
    DisputeFilters,
    DisputeMessageCreate,
    DisputePriority,
    DisputeStatus,
)
from labbilling.services.audit_service import AUDIT_TABLE
from labbilling.services.dispute_service import DISPUTES_TABLE, DisputeService
from labbilling.services.invoice_service import INVOICE_ITEMS_TABLE, INVOICES_TABLE


@pytest.fixture
def service(backend):
    return DisputeService(backend, "org-1")


@pytest.fixture
def line_item(backend):
    invoice = backend.seed(INVOICES_TABLE, {"organization_id": "org-1", "client_id": "client-9"})[0]
    return backend.seed(
        INVOICE_ITEMS_TABLE,
        {
            "invoice_id": invoice["id"],
            "cpt_code": "80053",
            "accession_number": "ACC-1",
            "units": 2,
            "unit_price": 40,
            "line_total": 80,
            "is_disputed": False,
        },
    )[0]


def test_create_dispute_numbers_and_flags_item(service, backend, line_item):
    """New tickets are numbered per month and flag the disputed item."""
    dispute = service.create_dispute(
        DisputeCreate(
            invoice_id=line_item["invoice_id"],
            invoice_item_id=line_item["id"],
            disputed_amount=Decimal("80"),
            reason_category=DisputeCategory.PRICING,
            reason_details="Billed above contracted rate",
        )
    )

    assert dispute.dispute_number == f"DSP-{date.today():%Y%m}-0001"
    assert dispute.status == DisputeStatus.OPEN
    assert dispute.priority == DisputePriority.NORMAL
    assert dispute.organization_id == "org-1"
    stored_item = backend.rows(INVOICE_ITEMS_TABLE)[0]
    assert stored_item["is_disputed"] is True
    assert stored_item["dispute_reason"] == "Billed above contracted rate"
    assert backend.rows(AUDIT_TABLE)[0]["action"] == "created"


def test_dispute_numbers_increment(service):
    """Each ticket in a month gets the next number."""
    first = service.create_dispute(DisputeCreate(reason_details="first"))
    second = service.create_dispute(DisputeCreate(reason_details="second"))

    assert first.dispute_number.endswith("-0001")
    assert second.dispute_number.endswith("-0002")


def test_get_disputes_filters_by_status(service, backend):
    """Only the organization's tickets in the given status are listed."""
    backend.seed(
        DISPUTES_TABLE,
        {"organization_id": "org-1", "status": "open", "created_at": "2025-03-01T00:00:00+00:00"},
        {"organization_id": "org-1", "status": "resolved", "created_at": "2025-03-02T00:00:00+00:00"},
        {"organization_id": "org-1", "status": "open", "created_at": "2025-03-03T00:00:00+00:00"},
        {"organization_id": "org-2", "status": "open", "created_at": "2025-03-04T00:00:00+00:00"},
    )

    page = service.get_disputes(DisputeFilters(status=DisputeStatus.OPEN))

    assert page.total == 2
    assert [d.created_at.day for d in page.data] == [3, 1]


def test_get_dispute_scoped_to_organization(service, backend):
    """Tickets of another organization are not found."""
    other = backend.seed(DISPUTES_TABLE, {"organization_id": "org-2"})[0]

    with pytest.raises(RecordNotFoundError, match=f"Dispute {other['id']} not found"):
        service.get_dispute(other["id"])


def test_resolve_dispute_clears_item_flag(service, backend, line_item):
    """Resolving stamps resolved_at and clears the item's flag."""
    dispute = service.create_dispute(
        DisputeCreate(invoice_item_id=line_item["id"], reason_details="Duplicate charge")
    )

    resolved = service.update_dispute_status(dispute.id, DisputeStatus.RESOLVED, "Credited")

    assert resolved.status == DisputeStatus.RESOLVED
    assert resolved.resolved_at is not None
    assert resolved.resolution_details == "Credited"
    stored_item = backend.rows(INVOICE_ITEMS_TABLE)[0]
    assert stored_item["is_disputed"] is False
    assert stored_item["dispute_resolution"] == "Credited"


def test_update_missing_dispute(service):
    """Updating an unknown ticket is a not-found error."""
    with pytest.raises(RecordNotFoundError):
        service.update_dispute_status("missing", DisputeStatus.REJECTED)


def test_assign_dispute(service, backend):
    """Assignment moves a ticket into review."""
    dispute = backend.seed(DISPUTES_TABLE, {"organization_id": "org-1", "status": "open"})[0]

    assigned = service.assign_dispute(dispute["id"], "user-7")

    assert assigned.assigned_to == "user-7"
    assert assigned.status == DisputeStatus.IN_REVIEW
    with pytest.raises(ValueError, match="user_id is required"):
        service.assign_dispute(dispute["id"], "")


def test_messages_are_listed_in_order(service, backend):
    """Messages come back oldest first."""
    dispute = backend.seed(DISPUTES_TABLE, {"organization_id": "org-1"})[0]

    service.add_message(dispute["id"], DisputeMessageCreate(user_id="u1", message="Please review"))
    service.add_message(dispute["id"], DisputeMessageCreate(user_id="u2", message="Reviewed"))

    messages = service.get_messages(dispute["id"])
    assert [m.message for m in messages] == ["Please review", "Reviewed"]
    assert backend.rows(DISPUTES_TABLE)[0].get("updated_at") is not None


def test_bulk_disputes_report_missing_items(service, backend, line_item):
    """Missing items are counted as failures; the rest are created."""
    result = service.create_bulk_disputes(
        [line_item["id"], "missing"], DisputeCategory.DUPLICATE, "Duplicate billing"
    )

    assert result.created == 1
    assert result.failed == 1
    assert result.errors == ["Item missing not found"]
    dispute = backend.rows(DISPUTES_TABLE)[0]
    assert dispute["client_id"] == "client-9"
    assert dispute["disputed_amount"] == 80.0
    assert dispute["reason_details"] == "Duplicate billing - Accession: ACC-1, CPT: 80053"


def test_bulk_disputes_continue_after_missing_insert_row(service, backend, line_item):
    """An insert that returns no row fails that item only."""
    second = backend.seed(
        INVOICE_ITEMS_TABLE,
        {"invoice_id": line_item["invoice_id"], "cpt_code": "85025", "accession_number": "ACC-2", "line_total": 15},
    )[0]
    backend.fail_on(
        DISPUTES_TABLE,
        "POST",
        BackendError("JSON object requested, multiple (or no) rows returned", code=NO_ROWS_CODE, status_code=406),
    )

    result = service.create_bulk_disputes([line_item["id"], second["id"]], DisputeCategory.PRICING, "Wrong price")

    assert result.created == 1
    assert result.failed == 1
    assert result.errors == [f"Failed to create dispute for item {line_item['id']}: Create Dispute: record not found"]
    assert [row["invoice_item_id"] for row in backend.rows(DISPUTES_TABLE)] == [second["id"]]

def test_dispute_stats(service, backend):
    """Stats count statuses, amounts and average resolution days."""
    backend.seed(
        DISPUTES_TABLE,
        {"organization_id": "org-1", "status": "open", "disputed_amount": 50,
         "reason_category": "pricing", "priority": "high", "created_at": "2025-03-01T00:00:00+00:00"},
        {"organization_id": "org-1", "status": "resolved", "disputed_amount": 25.5,
         "reason_category": "pricing", "created_at": "2025-03-02T00:00:00+00:00",
         "resolved_at": "2025-03-04T00:00:00+00:00"},
        {"organization_id": "org-1", "status": "rejected", "disputed_amount": 10,
         "reason_category": "duplicate", "created_at": "2025-03-10T12:00:00+00:00",
         "resolved_at": "2025-03-14T12:00:00+00:00"},
        {"organization_id": "org-1", "status": "open", "disputed_amount": 999,
         "created_at": "2025-04-01T00:00:00+00:00"},
    )

    stats = service.get_dispute_stats(date(2025, 3, 1), date(2025, 3, 31))

    assert stats.total == 3
    assert stats.open == 1
    assert stats.resolved == 1
    assert stats.rejected == 1
    assert stats.total_disputed_amount == Decimal("85.5")
    assert stats.avg_resolution_time == 3
    assert stats.by_category == {"pricing": 2, "duplicate": 1}
    assert stats.by_priority == {"high": 1, "normal": 2}


def test_average_resolution_rounds_half_up(service, backend):
    """Two and three days average to 2.5, reported as 3."""
    backend.seed(
        DISPUTES_TABLE,
        {"organization_id": "org-1", "status": "resolved", "created_at": "2025-03-01T00:00:00+00:00",
         "resolved_at": "2025-03-03T00:00:00+00:00"},
        {"organization_id": "org-1", "status": "resolved", "created_at": "2025-03-05T00:00:00+00:00",
         "resolved_at": "2025-03-08T00:00:00+00:00"},
    )

    assert service.get_dispute_stats().avg_resolution_time == 3


def test_get_disputes_refreshes_expired_session(service, backend):
    """An expired token is refreshed once and the listing retried."""
    backend.session_store.save(Session(access_token="stale", refresh_token="refresh-u1", user_id="u1"))
    backend.seed(DISPUTES_TABLE, {"organization_id": "org-1", "status": "open", "created_at": "2025-03-01T00:00:00+00:00"})
    backend.fail_on(DISPUTES_TABLE, "GET", BackendError("JWT expired", status_code=401))

    page = service.get_disputes()

    assert page.total == 1
    assert backend.auth_calls == ["token?grant_type=refresh_token"]
    assert backend.session_store.session.access_token == "access-u1-1"
