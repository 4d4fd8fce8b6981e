from datetime import date
from decimal import Decimal

import pytest

from labbilling.core.errors import BackendServiceError, RecordNotFoundError
from labbilling.schemas.billing_schema import MultiInvoicePaymentRequest, PaymentRequest, PaymentStatus
from labbilling.services.audit_service import AUDIT_TABLE
from labbilling.services.payment_service import ALLOCATIONS_TABLE, CREDITS_TABLE, PAYMENTS_TABLE, PaymentService


@pytest.fixture
def service(backend):
    return PaymentService(backend, "org-1")


def seed_invoice(backend, total, paid=0, status="sent", client_id="c1", number="INV-1"):
    return backend.seed(
        "invoices",
        {
            "client_id": client_id,
            "invoice_number": number,
            "status": status,
            "total_amount": total,
            "paid_amount": paid,
        },
    )[0]


def test_partial_payment(service, backend):
    """A payment under the balance marks the invoice partial."""
    invoice = seed_invoice(backend, 100)

    result = service.allocate_payment(PaymentRequest(invoice_id=invoice["id"], amount=Decimal("40")))

    assert result.status == PaymentStatus.POSTED
    assert result.credit_amount == Decimal("0")
    assert [a.allocated_amount for a in result.allocations] == [Decimal("40")]
    assert invoice["status"] == "partial"
    assert invoice["paid_amount"] == 40.0
    payment = backend.rows(PAYMENTS_TABLE)[0]
    assert payment["status"] == "posted"
    assert payment["organization_id"] == "org-1"
    assert backend.rows(AUDIT_TABLE)[0]["action"] == "payment_allocated"


def test_full_payment_marks_paid(service, backend):
    """Paying the balance marks the invoice paid."""
    invoice = seed_invoice(backend, 100, paid=60, status="partial")

    service.allocate_payment(PaymentRequest(invoice_id=invoice["id"], amount=Decimal("40")))

    assert invoice["status"] == "paid"
    assert invoice["paid_at"] is not None


def test_overpayment_creates_credit(service, backend):
    """The excess becomes an available client credit."""
    invoice = seed_invoice(backend, 100)

    result = service.allocate_payment(PaymentRequest(invoice_id=invoice["id"], amount=Decimal("130")))

    assert result.credit_amount == Decimal("30.00")
    credit = backend.rows(CREDITS_TABLE)[0]
    assert credit["credit_amount"] == 30.0
    assert credit["remaining_credit"] == 30.0
    assert credit["client_id"] == "c1"
    assert service.verify_payment_integrity(result.payment_id) is True
    assert [c.credit_amount for c in service.get_client_credits("c1")] == [Decimal("30")]


def test_duplicate_payment_rejected(service, backend):
    """The same payment cannot be posted twice."""
    invoice = seed_invoice(backend, 100)
    request = PaymentRequest(invoice_id=invoice["id"], amount=Decimal("40"), reference_number="CHK-1")

    service.allocate_payment(request)
    with pytest.raises(ValueError, match="Duplicate payment detected"):
        service.allocate_payment(request)

    assert len(backend.rows(PAYMENTS_TABLE)) == 1


def test_payment_rules(service, backend):
    """Bad amounts, unknown invoices and drafts are rejected."""
    draft = seed_invoice(backend, 100, status="draft")

    with pytest.raises(ValueError, match="Invalid payment amount"):
        service.allocate_payment(PaymentRequest(invoice_id=draft["id"], amount=Decimal("10.005")))
    with pytest.raises(RecordNotFoundError, match="Invoice with ID nope not found"):
        service.allocate_payment(PaymentRequest(invoice_id="nope", amount=Decimal("10")))
    with pytest.raises(ValueError, match="Cannot post a payment to a draft invoice"):
        service.allocate_payment(PaymentRequest(invoice_id=draft["id"], amount=Decimal("10")))
    assert backend.rows(PAYMENTS_TABLE) == []


def test_failed_write_is_reported(service, backend):
    """A failure after the payment insert surfaces as an error."""
    invoice = seed_invoice(backend, 100)
    backend.fail_on(ALLOCATIONS_TABLE, "POST")

    with pytest.raises(BackendServiceError):
        service.allocate_payment(PaymentRequest(invoice_id=invoice["id"], amount=Decimal("40")))

    assert len(backend.rows(PAYMENTS_TABLE)) == 1
    assert invoice["paid_amount"] == 0


def test_multi_invoice_payment(service, backend):
    """One payment settles invoices in the order given."""
    first = seed_invoice(backend, 100, number="INV-1")
    second = seed_invoice(backend, 80, paid=30, status="partial", number="INV-2")

    result = service.allocate_multi_invoice(
        MultiInvoicePaymentRequest(client_id="c1", amount=Decimal("120"), invoice_ids=[second["id"], first["id"]])
    )

    assert result.status == PaymentStatus.POSTED
    assert result.unallocated_amount == Decimal("0")
    assert [(a.invoice_id, a.allocated_amount) for a in result.allocations] == [
        (second["id"], Decimal("50")),
        (first["id"], Decimal("70")),
    ]
    assert second["status"] == "paid"
    assert first["status"] == "partial"
    assert service.verify_payment_integrity(result.payment_id) is True


def test_multi_invoice_remainder_stays_pending(service, backend):
    """Money left over keeps the payment pending."""
    invoice = seed_invoice(backend, 100)

    result = service.allocate_multi_invoice(
        MultiInvoicePaymentRequest(client_id="c1", amount=Decimal("150"), invoice_ids=[invoice["id"]])
    )

    assert result.status == PaymentStatus.PENDING
    assert result.unallocated_amount == Decimal("50")
    assert backend.rows(PAYMENTS_TABLE)[0]["status"] == "pending"
    assert service.verify_payment_integrity(result.payment_id) is False


def test_multi_invoice_checks_ownership(service, backend):
    """Every invoice must belong to the paying client."""
    mine = seed_invoice(backend, 100)
    theirs = seed_invoice(backend, 100, client_id="c2")

    with pytest.raises(ValueError, match=f"Invoice {theirs['id']} does not belong to client c1"):
        service.allocate_multi_invoice(
            MultiInvoicePaymentRequest(client_id="c1", amount=Decimal("10"), invoice_ids=[mine["id"], theirs["id"]])
        )
    with pytest.raises(RecordNotFoundError):
        service.allocate_multi_invoice(
            MultiInvoicePaymentRequest(client_id="c1", amount=Decimal("10"), invoice_ids=["missing"])
        )
    assert backend.rows(PAYMENTS_TABLE) == []


def test_multi_invoice_rejects_repeated_invoice(service, backend):
    """An invoice listed twice would be paid twice from a stale balance."""
    invoice = seed_invoice(backend, 100)

    with pytest.raises(ValueError, match=f"Invoice {invoice['id']} is listed more than once"):
        service.allocate_multi_invoice(
            MultiInvoicePaymentRequest(client_id="c1", amount=Decimal("200"), invoice_ids=[invoice["id"], invoice["id"]])
        )

    assert backend.rows(PAYMENTS_TABLE) == []
    assert backend.rows(ALLOCATIONS_TABLE) == []
    assert invoice["paid_amount"] == 0


def test_reconciliation_report(service, backend):
    """Rows show allocated amounts and the filters select by allocation state."""
    backend.seed("clients", {"id": "c1", "name": "Acme"})
    backend.seed("invoices", {"id": "i1", "invoice_number": "INV-1"})
    backend.seed(
        PAYMENTS_TABLE,
        {"id": "p1", "organization_id": "org-1", "client_id": "c1", "amount": 100, "payment_date": "2025-03-10"},
        {"id": "p2", "organization_id": "org-1", "client_id": "c1", "amount": 50, "payment_date": "2025-03-11"},
        {"id": "p3", "organization_id": "org-1", "amount": 20, "payment_date": "2025-03-12"},
        {"id": "p4", "organization_id": "org-1", "amount": 70, "payment_date": "2025-04-02"},
    )
    backend.seed(
        ALLOCATIONS_TABLE,
        {"payment_id": "p1", "invoice_id": "i1", "allocated_amount": 100},
        {"payment_id": "p2", "invoice_id": "i1", "allocated_amount": 20},
    )

    report = service.get_reconciliation_report(date(2025, 3, 1), date(2025, 3, 31))

    assert [row.payment_id for row in report.rows] == ["p3", "p2", "p1"]
    assert report.count == 3
    assert report.payment_amount == Decimal("170.00")
    assert report.allocated_amount == Decimal("120.00")
    assert report.unallocated_amount == Decimal("50.00")
    p1 = report.rows[2]
    assert p1.client_name == "Acme"
    assert p1.allocations[0].invoice_number == "INV-1"
    assert report.rows[0].client_name == "Unknown"

    def ids(status_filter):
        return [r.payment_id for r in service.get_reconciliation_report(date(2025, 3, 1), date(2025, 3, 31), status_filter).rows]

    assert ids("unallocated") == ["p3"]
    assert ids("partial") == ["p2"]
    assert ids("complete") == ["p1"]


def test_list_and_get_payments(service, backend):
    """Payments are listed newest first and fetched by id."""
    backend.seed(
        PAYMENTS_TABLE,
        {"id": "p1", "organization_id": "org-1", "client_id": "c1", "amount": 10, "payment_date": "2025-03-01"},
        {"id": "p2", "organization_id": "org-1", "client_id": "c1", "amount": 20, "payment_date": "2025-03-05"},
        {"id": "p3", "organization_id": "org-1", "client_id": "c2", "amount": 30, "payment_date": "2025-03-09"},
    )

    assert [p.id for p in service.list_payments(client_id="c1")] == ["p2", "p1"]
    assert service.get_payment("p3").amount == Decimal("30")
    with pytest.raises(RecordNotFoundError, match="Payment with ID nope not found"):
        service.get_payment("nope")
