from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from labbilling.core.backend_client import BackendError
from labbilling.main import app
from labbilling.routes.dependencies import get_backend_client
from labbilling.services.cpt_service import CLIENT_OVERRIDES_TABLE, CPT_CODES_TABLE
from labbilling.services.invoice_numbering import NEXT_NUMBER_RPC
from labbilling.services.invoice_service import INVOICE_ITEMS_TABLE, INVOICES_TABLE


ORG_HEADERS = {"X-Organization-Id": "org-1"}


@pytest.fixture
def api(backend):
    app.dependency_overrides[get_backend_client] = lambda: backend
    yield TestClient(app)
    app.dependency_overrides.clear()


def seed_invoice(backend, status="draft", **extra):
    row = {
        "organization_id": "org-1",
        "client_id": "c1",
        "invoice_number": "INV-2025-000001",
        "status": status,
        "subtotal": 100,
        "total_amount": 100,
        "paid_amount": 0,
        "issue_date": "2025-03-01",
        "due_date": "2025-03-31",
    }
    row.update(extra)
    return backend.seed(INVOICES_TABLE, row)[0]


def test_health(api):
    """Health check reports the service name."""
    response = api.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "lab_billing"


def test_create_and_list_invoices(api, backend):
    """A created invoice is a draft and shows up in the list."""
    response = api.post("/api/invoices", json={"client_id": "c1", "issue_date": "2025-03-01"}, headers=ORG_HEADERS)

    assert response.status_code == 201
    assert response.json()["status"] == "draft"
    assert response.json()["due_date"] == "2025-03-31"

    listing = api.get("/api/invoices", params={"status": "draft"}, headers=ORG_HEADERS)
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert backend.rows(INVOICES_TABLE)[0]["organization_id"] == "org-1"


def test_get_missing_invoice_is_404(api):
    """Unknown invoices map to 404 with the service message."""
    response = api.get("/api/invoices/nope", headers=ORG_HEADERS)

    assert response.status_code == 404
    assert response.json()["detail"] == "Invoice with ID nope not found"


def test_bad_list_parameters_are_400(api):
    """Invalid paging is rejected as a bad request."""
    response = api.get("/api/invoices", params={"limit": 0}, headers=ORG_HEADERS)

    assert response.status_code == 400


def test_backend_failures_map_by_category(api, backend):
    """Network failures are 503; unclassified failures are 500."""
    backend.fail_on(INVOICES_TABLE, "GET", BackendError("connection refused"))
    assert api.get("/api/invoices", headers=ORG_HEADERS).status_code == 503

    backend.fail_on(INVOICES_TABLE, "GET")
    response = api.get("/api/invoices", headers=ORG_HEADERS)
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to list invoices"


def test_sent_invoice_edit_and_delete_are_refused(api, backend):
    """Sent invoices keep their fields and cannot be deleted."""
    invoice = seed_invoice(backend, status="sent")

    assert api.patch(f"/api/invoices/{invoice['id']}", json={"notes": "x"}, headers=ORG_HEADERS).status_code == 400
    assert api.delete(f"/api/invoices/{invoice['id']}", headers=ORG_HEADERS).status_code == 400

    draft = seed_invoice(backend)
    assert api.delete(f"/api/invoices/{draft['id']}", headers=ORG_HEADERS).status_code == 204


def test_status_transition_route(api, backend):
    """Allowed transitions update the invoice; others are 400."""
    invoice = seed_invoice(backend)

    response = api.post(f"/api/invoices/{invoice['id']}/status", json={"status": "sent"}, headers=ORG_HEADERS)
    assert response.status_code == 200
    assert response.json()["status"] == "sent"

    response = api.post(f"/api/invoices/{invoice['id']}/status", json={"status": "draft"}, headers=ORG_HEADERS)
    assert response.status_code == 400


def test_compute_totals(api):
    """Totals are computed without touching the backend."""
    response = api.post(
        "/api/invoices/totals",
        json={
            "items": [{"cpt_code": "80053", "units": 2, "unit_price": "100"}, {"cpt_code": "85025", "unit_price": "50"}],
            "tax_rate": "0.1",
            "discount_amount": "25",
        },
    )

    assert response.status_code == 200
    assert Decimal(response.json()["total_amount"]) == Decimal("247.50")


def test_patient_responsibility_route(api):
    """Secondary coverage applies to what the primary payer leaves."""
    response = api.post(
        "/api/invoices/patient-responsibility",
        json={
            "invoice_total": "200",
            "primary": {"coverage_percent": "0.8"},
            "secondary": {"coverage_percent": "0.5"},
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["primary_coverage"]) == Decimal("160")
    assert Decimal(body["secondary_coverage"]) == Decimal("20")
    assert Decimal(body["patient_responsibility"]) == Decimal("20")
    assert api.post("/api/invoices/patient-responsibility", json={"invoice_total": "-1"}).status_code == 422


def test_late_fee_route(api, backend):
    """Overdue invoices report their accrued late fee."""
    invoice = seed_invoice(backend, status="sent")

    response = api.get(f"/api/invoices/{invoice['id']}/late-fee", params={"as_of": "2025-04-15"})

    assert response.status_code == 200
    assert response.json()["days_overdue"] == 15
    assert Decimal(response.json()["late_fee"]) == Decimal("1.50")
    assert api.get("/api/invoices/missing/late-fee").status_code == 404

def test_separation_requires_organization(api):
    """Separating line items needs the organization header."""
    response = api.post(
        "/api/invoices/separate",
        json={"client_id": "c1", "items": [{"cpt_code": "99306"}], "billing_period": {"start": "2025-03-01", "end": "2025-03-31"}},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "X-Organization-Id header is required"


def test_separate_invoices(api, backend):
    """One invoice is created per type present."""
    backend.rpc_handlers[NEXT_NUMBER_RPC] = "INV-2025-000123"

    response = api.post(
        "/api/invoices/separate",
        json={
            "client_id": "c1",
            "items": [
                {"cpt_code": "99306", "unit_price": "120"},
                {"cpt_code": "85025", "unit_price": "15"},
            ],
            "billing_period": {"start": "2025-03-01", "end": "2025-03-31"},
        },
        headers={**ORG_HEADERS, "X-Laboratory-Id": "lab-1"},
    )

    assert response.status_code == 201
    assert sorted(response.json()) == ["Regular", "SNF"]
    numbers = sorted(row["invoice_number"] for row in backend.rows(INVOICES_TABLE))
    assert numbers == ["INV-2025-000123-Regular", "INV-2025-000123-SNF"]


def test_invoice_number_requires_laboratory(api, backend):
    """Numbers are drawn per laboratory."""
    backend.rpc_handlers[NEXT_NUMBER_RPC] = "INV-2025-000007"

    assert api.post("/api/invoices/number").status_code == 400
    response = api.post("/api/invoices/number", headers={"X-Laboratory-Id": "lab-1"})
    assert response.json() == {"invoice_number": "INV-2025-000007"}


def test_invoice_pdf(api, backend):
    """The PDF download carries the invoice number as its filename."""
    backend.seed("clients", {"id": "c1", "organization_id": "org-1", "name": "Acme Labs"})
    invoice = seed_invoice(backend, status="sent")
    backend.seed(
        INVOICE_ITEMS_TABLE,
        {"invoice_id": invoice["id"], "cpt_code": "80053", "description": "Metabolic panel", "units": 1, "unit_price": 45},
    )

    response = api.get(f"/api/invoices/{invoice['id']}/pdf", headers=ORG_HEADERS)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert "INV-2025-000001.pdf" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")


def test_disputes_require_organization(api):
    """Dispute routes are scoped to an organization."""
    assert api.get("/api/disputes").status_code == 400

    response = api.get("/api/disputes", headers=ORG_HEADERS)
    assert response.status_code == 200
    assert response.json()["total"] == 0


def test_cpt_price_route(api, backend):
    """Exactly one owner must be named; overrides win."""
    code = backend.seed(CPT_CODES_TABLE, {"code": "80053", "description": "Panel", "default_price": 45})[0]
    backend.seed(CLIENT_OVERRIDES_TABLE, {"cpt_code_id": code["id"], "client_id": "c1", "price": 39.5})

    assert api.get(f"/api/cpt-codes/{code['id']}/price").status_code == 400
    assert api.get(f"/api/cpt-codes/{code['id']}/price", params={"client_id": "c1", "clinic_id": "k1"}).status_code == 400

    response = api.get(f"/api/cpt-codes/{code['id']}/price", params={"client_id": "c1"})
    assert response.status_code == 200
    assert response.json()["is_override"] is True
    assert Decimal(response.json()["price"]) == Decimal("39.5")


def test_payment_route_rejects_duplicates(api, backend):
    """A resubmitted payment is a bad request."""
    invoice = seed_invoice(backend, status="sent")
    body = {"invoice_id": invoice["id"], "amount": "40", "reference_number": "CHK-9"}

    first = api.post("/api/payments", json=body, headers=ORG_HEADERS)
    assert first.status_code == 201
    assert first.json()["status"] == "posted"

    second = api.post("/api/payments", json=body, headers=ORG_HEADERS)
    assert second.status_code == 400
    assert "Duplicate payment detected" in second.json()["detail"]


def test_import_rejects_non_csv(api):
    """Only CSV uploads are accepted."""
    response = api.post(
        "/api/import/clients",
        files={"file": ("clients.xlsx", b"binary", "application/octet-stream")},
        headers=ORG_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Only CSV files are supported"


def test_import_validate_upload(api, backend):
    """Validation uploads report results and write nothing."""
    response = api.post(
        "/api/import/clients",
        files={"file": ("clients.csv", b"name,email\nAcme,billing@acme.test\n", "text/csv")},
        data={"mode": "validate"},
        headers=ORG_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["success"] == 1
    assert response.json()["mode"] == "validate"
    assert backend.rows("clients") == []


def test_import_rejects_non_utf8(api):
    """Files that are not UTF-8 are rejected."""
    response = api.post(
        "/api/import/clients",
        files={"file": ("clients.csv", "name\nCafé\n".encode("latin-1"), "text/csv")},
        headers=ORG_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "CSV file must be UTF-8 encoded"


def test_dashboard_stats_route(api):
    """The dashboard returns its four headline figures."""
    response = api.get("/api/dashboard/stats", params={"date_range": "7days"}, headers=ORG_HEADERS)

    assert response.status_code == 200
    assert [stat["id"] for stat in response.json()] == [
        "total-invoiced",
        "total-paid",
        "outstanding-balance",
        "overdue-invoices",
    ]


def test_login_logout_and_session(api, backend):
    """Signing in stores the session; signing out clears it."""
    backend.add_user("ops@lab.test", "secret", "u1")

    assert api.get("/api/auth/session").json() == {"authenticated": False, "user_id": None}
    response = api.post("/api/auth/login", json={"email": "ops@lab.test", "password": "secret"})
    assert response.status_code == 200
    assert response.json() == {"authenticated": True, "user_id": "u1"}
    assert backend.session_store.session.refresh_token == "refresh-u1"
    assert api.get("/api/auth/session").json()["user_id"] == "u1"

    assert api.post("/api/auth/logout").status_code == 204
    assert backend.session_store.session is None


def test_login_with_wrong_password_is_401(api, backend):
    """Rejected credentials do not leave a session behind."""
    backend.add_user("ops@lab.test", "secret", "u1")

    response = api.post("/api/auth/login", json={"email": "ops@lab.test", "password": "nope"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"
    assert backend.session_store.session is None
