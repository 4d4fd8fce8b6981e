import json
from datetime import date
from decimal import Decimal

import pytest
import requests

from labbilling.core.backend_client import (
    SINGLE_OBJECT_MEDIA_TYPE,
    BackendClient,
    BackendError,
    format_filter_value,
    to_json_value,
)
from labbilling.core.settings import BackendSettings
from labbilling.schemas.billing_schema import InvoiceStatus


class StubHttp:
    """Records requests and replays canned responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_response(status=200, payload=None, headers=None, reason="OK"):
    response = requests.Response()
    response.status_code = status
    response.reason = reason
    response._content = json.dumps(payload).encode("utf-8") if payload is not None else b""
    response.headers.update(headers or {})
    return response


def make_client(*responses, url="https://backend.test"):
    http = StubHttp(*responses)
    client = BackendClient(BackendSettings(url=url, api_key="anon-key"), http=http)
    return client, http


def test_query_builder_params():
    """Filters, ordering and ranges become PostgREST parameters."""
    client, _ = make_client()

    request = (
        client.table("invoices")
        .select("id, status", count="exact")
        .eq("status", InvoiceStatus.SENT)
        .in_("client_id", ["a", "b,c"])
        .or_("invoice_number.ilike.%42%")
        .order("due_date")
        .order("created_at", ascending=False)
        .range(20, 29)
        .build()
    )

    assert request.method == "GET"
    assert request.path == "invoices"
    assert request.params == [
        ("select", "id,status"),
        ("status", "eq.sent"),
        ("client_id", 'in.(a,"b,c")'),
        ("or", "(invoice_number.ilike.%42%)"),
        ("order", "due_date.asc,created_at.desc"),
        ("offset", "20"),
        ("limit", "10"),
    ]
    assert request.headers["Prefer"] == "count=exact"


def test_insert_and_single_headers():
    """Inserts serialize bodies and ask for the row back."""
    client, _ = make_client()

    request = client.table("payments").insert({"amount": Decimal("12.50"), "payment_date": date(2025, 3, 1)}).single().build()

    assert request.method == "POST"
    assert request.json == {"amount": 12.5, "payment_date": "2025-03-01"}
    assert request.headers["Prefer"] == "return=representation"
    assert request.headers["Accept"] == SINGLE_OBJECT_MEDIA_TYPE


def test_range_rejects_bad_window():
    """Ranges must be ordered and non-negative."""
    client, _ = make_client()

    with pytest.raises(ValueError, match="range requires"):
        client.table("invoices").range(5, 2)


def test_execute_sends_auth_and_parses_count():
    """Requests carry the api key and the total comes from Content-Range."""
    client, http = make_client(make_response(payload=[{"id": "1"}], headers={"Content-Range": "0-0/42"}))

    response = client.table("invoices").select("*", count="exact").execute()

    assert response.data == [{"id": "1"}]
    assert response.count == 42
    method, url, kwargs = http.calls[0]
    assert (method, url) == ("GET", "https://backend.test/rest/v1/invoices")
    assert kwargs["headers"]["apikey"] == "anon-key"
    assert kwargs["headers"]["Authorization"] == "Bearer anon-key"


def test_error_payload_becomes_backend_error():
    """Backend error bodies keep their message and code."""
    client, _ = make_client(
        make_response(403, {"message": "permission denied for table invoices", "code": "42501"}, reason="Forbidden")
    )

    with pytest.raises(BackendError) as excinfo:
        client.table("invoices").select("*").execute()

    assert excinfo.value.status_code == 403
    assert excinfo.value.code == "42501"
    assert "permission denied" in str(excinfo.value)


def test_single_unwraps_list_response():
    """A one-row list is unwrapped for single requests."""
    client, _ = make_client(make_response(payload=[{"id": "7"}]))

    response = client.table("invoices").select("*").eq("id", "7").single().execute()

    assert response.data == {"id": "7"}


def test_maybe_single():
    """No rows is None; several rows is an error."""
    client, _ = make_client(make_response(payload=[]), make_response(payload=[{"id": 1}, {"id": 2}]))

    assert client.table("invoices").select("*").maybe_single().execute().data is None
    with pytest.raises(BackendError, match="multiple rows"):
        client.table("invoices").select("*").maybe_single().execute()


def test_rpc_posts_params():
    """Remote procedures are POSTed under rpc/."""
    client, http = make_client(make_response(payload="INV-2025-000001"))

    response = client.rpc("get_next_invoice_number", {"p_laboratory_id": "lab-1", "p_prefix": None})

    assert response.data == "INV-2025-000001"
    method, url, kwargs = http.calls[0]
    assert (method, url) == ("POST", "https://backend.test/rest/v1/rpc/get_next_invoice_number")
    assert kwargs["json"] == {"p_laboratory_id": "lab-1", "p_prefix": None}


def test_missing_url_is_an_error():
    """Nothing is sent without a configured backend."""
    client, http = make_client(url="")

    with pytest.raises(BackendError, match="not configured"):
        client.table("invoices").select("*").execute()
    assert http.calls == []


def test_timeout_is_reported_as_network_error():
    """Transport timeouts become backend errors."""
    client, _ = make_client(requests.exceptions.Timeout("read timed out"))

    with pytest.raises(BackendError, match="Network timeout"):
        client.table("invoices").select("*").execute()


def test_sign_in_uses_session_token():
    """After sign-in, requests are made with the user's token."""
    client, http = make_client(
        make_response(payload={"access_token": "user-token", "refresh_token": "r1", "user": {"id": "u1"}}),
        make_response(payload=[]),
    )

    session = client.sign_in_with_password("ops@lab.test", "secret")
    client.table("invoices").select("*").execute()

    assert session.user_id == "u1"
    assert http.calls[0][1] == "https://backend.test/auth/v1/token?grant_type=password"
    assert http.calls[1][2]["headers"]["Authorization"] == "Bearer user-token"


def test_session_file_round_trip(tmp_path):
    """Sessions persist to the configured file."""
    path = str(tmp_path / "session.json")
    settings = BackendSettings(url="https://backend.test", api_key="k", session_file=path)
    first = BackendClient(settings, http=StubHttp(make_response(payload={"access_token": "t1"})))
    first.sign_in_with_password("a@b.test", "pw")

    second = BackendClient(settings, http=StubHttp())

    assert second.session_store.session.access_token == "t1"
    second.sign_out()
    assert BackendClient(settings, http=StubHttp()).session_store.session is None


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, "null"),
        (True, "true"),
        (date(2025, 1, 2), "2025-01-02"),
        (InvoiceStatus.PAID, "paid"),
        (Decimal("1.50"), "1.50"),
        (7, "7"),
    ],
)
def test_format_filter_value(value, expected):
    """Python values render in filter syntax."""
    assert format_filter_value(value) == expected


def test_to_json_value_nested():
    """Nested structures are made JSON safe."""
    assert to_json_value({"a": [Decimal("1.5"), InvoiceStatus.DRAFT], "b": {"d": date(2025, 1, 1)}}) == {
        "a": [1.5, "draft"],
        "b": {"d": "2025-01-01"},
    }
