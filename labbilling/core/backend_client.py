"""
Client for the hosted relational backend.

The backend exposes every table over REST (PostgREST conventions) plus
named remote procedures. This module turns chained filter calls into
those requests and normalizes responses and errors:

    client.table("invoices").select("*", count="exact").eq("status", "sent") \
        .order("created_at", ascending=False).range(0, 9).execute()

Sequencing, totals and row-level security are enforced remotely; nothing
here adds locking or transactions.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from labbilling.core.session_store import Session, SessionStore
from labbilling.core.settings import BackendSettings


logger = logging.getLogger(__name__)

SINGLE_OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"
NO_ROWS_CODE = "PGRST116"


class BackendError(Exception):
    """Error payload returned by (or raised while talking to) the backend."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[str] = None,
        hint: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint
        self.status_code = status_code

    def __str__(self) -> str:
        if self.code:
            return f"{self.message} (code {self.code})"
        return self.message


@dataclass
class BackendRequest:
    method: str
    path: str
    params: List[Tuple[str, str]] = field(default_factory=list)
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    def param(self, name: str) -> Optional[str]:
        for key, value in self.params:
            if key == name:
                return value
        return None


@dataclass
class BackendResponse:
    data: Any
    count: Optional[int] = None
    status_code: int = 200


def format_filter_value(value: Any) -> str:
    """Render a Python value the way the REST filter grammar expects it."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def to_json_value(value: Any) -> Any:
    """Make pydantic/Decimal/date values JSON-serializable for request bodies."""
    if isinstance(value, dict):
        return {k: to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def quote_filter_value(value: Any) -> str:
    """Quote a value for use inside an in-list or or-group."""
    text = format_filter_value(value)
    if any(ch in text for ch in ',()"'):
        return '"' + text.replace('"', '\\"') + '"'
    return text


class QueryBuilder:
    """Accumulates one table request; nothing is sent until ``execute``."""

    def __init__(self, client: "BackendClient", table: str):
        self._client = client
        self._table = table
        self._method = "GET"
        self._params: List[Tuple[str, str]] = []
        self._headers: Dict[str, str] = {}
        self._prefer: List[str] = []
        self._body: Any = None
        self._single = False
        self._maybe_single = False

    # -- verbs -------------------------------------------------------------

    def select(self, columns: str = "*", count: Optional[str] = None) -> "QueryBuilder":
        cleaned = "".join(columns.split())
        self._params = [p for p in self._params if p[0] != "select"]
        self._params.append(("select", cleaned or "*"))
        if count:
            self._prefer.append(f"count={count}")
        return self

    def insert(self, rows: Any, returning: bool = True) -> "QueryBuilder":
        self._method = "POST"
        self._body = to_json_value(rows)
        if returning:
            self._prefer.append("return=representation")
        return self

    def update(self, values: Dict[str, Any]) -> "QueryBuilder":
        self._method = "PATCH"
        self._body = to_json_value(values)
        self._prefer.append("return=representation")
        return self

    def delete(self) -> "QueryBuilder":
        self._method = "DELETE"
        self._prefer.append("return=representation")
        return self

    # -- filters -----------------------------------------------------------

    def _filter(self, column: str, operator: str, value: Any) -> "QueryBuilder":
        self._params.append((column, f"{operator}.{format_filter_value(value)}"))
        return self

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "lte", value)

    def like(self, column: str, pattern: str) -> "QueryBuilder":
        return self._filter(column, "like", pattern)

    def ilike(self, column: str, pattern: str) -> "QueryBuilder":
        return self._filter(column, "ilike", pattern)

    def is_(self, column: str, value: Any) -> "QueryBuilder":
        return self._filter(column, "is", value)

    def in_(self, column: str, values: Iterable[Any]) -> "QueryBuilder":
        joined = ",".join(quote_filter_value(v) for v in values)
        self._params.append((column, f"in.({joined})"))
        return self

    def or_(self, expression: str) -> "QueryBuilder":
        self._params.append(("or", f"({expression})"))
        return self

    # -- shaping -----------------------------------------------------------

    def order(self, column: str, ascending: bool = True) -> "QueryBuilder":
        term = f"{column}.{'asc' if ascending else 'desc'}"
        for index, (name, value) in enumerate(self._params):
            if name == "order":
                self._params[index] = ("order", f"{value},{term}")
                return self
        self._params.append(("order", term))
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._params = [p for p in self._params if p[0] != "limit"]
        self._params.append(("limit", str(count)))
        return self

    def range(self, start: int, end: int) -> "QueryBuilder":
        """Inclusive row window, like ``range(0, 9)`` for the first ten rows."""
        if start < 0 or end < start:
            raise ValueError("range requires 0 <= start <= end")
        self._params = [p for p in self._params if p[0] not in ("offset", "limit")]
        self._params.append(("offset", str(start)))
        self._params.append(("limit", str(end - start + 1)))
        return self

    def single(self) -> "QueryBuilder":
        self._single = True
        self._headers["Accept"] = SINGLE_OBJECT_MEDIA_TYPE
        return self

    def maybe_single(self) -> "QueryBuilder":
        self._maybe_single = True
        return self

    def build(self) -> BackendRequest:
        headers = dict(self._headers)
        if self._prefer:
            headers["Prefer"] = ",".join(self._prefer)
        return BackendRequest(
            method=self._method,
            path=self._table,
            params=list(self._params),
            json=self._body,
            headers=headers,
        )

    def execute(self) -> BackendResponse:
        response = self._client.execute(self.build())
        if self._maybe_single:
            rows = response.data or []
            if isinstance(rows, dict):
                return response
            if len(rows) > 1:
                raise BackendError(
                    "JSON object requested, multiple rows returned",
                    code=NO_ROWS_CODE,
                    status_code=406,
                )
            response.data = rows[0] if rows else None
        elif self._single and isinstance(response.data, list):
            # some proxies ignore the object media type
            if len(response.data) != 1:
                raise BackendError(
                    "JSON object requested, multiple (or no) rows returned",
                    code=NO_ROWS_CODE,
                    status_code=406,
                )
            response.data = response.data[0]
        return response


def _parse_content_range(header: Optional[str]) -> Optional[int]:
    # "0-9/42" or "*/0"
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def _error_from_response(response: requests.Response) -> BackendError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    message = (
        payload.get("message")
        or payload.get("error_description")
        or payload.get("msg")
        or f"Backend error: {response.status_code} {response.reason}"
    )
    return BackendError(
        message,
        code=payload.get("code") or payload.get("error"),
        details=payload.get("details"),
        hint=payload.get("hint"),
        status_code=response.status_code,
    )


class BackendClient:
    """
    Thin HTTP client around the backend's REST and auth endpoints.

    One instance is shared per process; it owns a ``requests.Session`` and
    the current user session tokens.
    """

    def __init__(
        self,
        settings: BackendSettings,
        http: Optional[requests.Session] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self.settings = settings
        self._http = http or requests.Session()
        self.session_store = session_store or SessionStore(settings.session_file)

    # -- query entry points -----------------------------------------------

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    def rpc(self, function: str, params: Optional[Dict[str, Any]] = None) -> BackendResponse:
        """Call a named remote procedure and return its JSON result as ``data``."""
        request = BackendRequest(
            method="POST",
            path=f"rpc/{function}",
            json=to_json_value(params or {}),
        )
        return self.execute(request)

    # -- auth ---------------------------------------------------------------

    def sign_in_with_password(self, email: str, password: str) -> Session:
        payload = self._auth_post("token?grant_type=password", {"email": email, "password": password})
        return self._store_session(payload)

    def refresh_session(self) -> Session:
        current = self.session_store.session
        if not current or not current.refresh_token:
            raise BackendError("No session to refresh: authentication required", status_code=401)
        payload = self._auth_post(
            "token?grant_type=refresh_token", {"refresh_token": current.refresh_token}
        )
        logger.info("Backend session refreshed")
        return self._store_session(payload)

    def sign_out(self) -> None:
        self.session_store.clear()

    def _store_session(self, payload: Dict[str, Any]) -> Session:
        if not payload.get("access_token"):
            raise BackendError("Authentication response did not include an access token", status_code=401)
        session = Session(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            user_id=(payload.get("user") or {}).get("id"),
        )
        self.session_store.save(session)
        return session

    def _auth_post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.settings.auth_url}/{path}"
        response = self._send("POST", url, json=body, headers=self._headers(with_user=False))
        if not response.ok:
            raise _error_from_response(response)
        return response.json()

    # -- transport ------------------------------------------------------------

    def _headers(self, with_user: bool = True) -> Dict[str, str]:
        token = self.settings.api_key
        session = self.session_store.session
        if with_user and session:
            token = session.access_token
        return {
            "apikey": self.settings.api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self._http.request(method, url, timeout=self.settings.timeout, **kwargs)
        except requests.exceptions.Timeout as exc:
            raise BackendError(f"Network timeout contacting backend: {exc}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise BackendError(f"Network connection error contacting backend: {exc}") from exc

    def execute(self, request: BackendRequest) -> BackendResponse:
        if not self.settings.url:
            raise BackendError("Backend URL is not configured (set BACKEND_URL)")
        url = f"{self.settings.rest_url}/{request.path}"
        headers = {**self._headers(), **request.headers}
        logger.debug("%s %s params=%s", request.method, url, request.params)

        response = self._send(
            request.method,
            url,
            params=request.params,
            json=request.json,
            headers=headers,
        )
        if not response.ok:
            raise _error_from_response(response)

        data = response.json() if response.content else None
        return BackendResponse(
            data=data,
            count=_parse_content_range(response.headers.get("Content-Range")),
            status_code=response.status_code,
        )


__all__ = [
    "BackendClient",
    "BackendError",
    "BackendRequest",
    "BackendResponse",
    "NO_ROWS_CODE",
    "QueryBuilder",
    "SINGLE_OBJECT_MEDIA_TYPE",
    "format_filter_value",
    "quote_filter_value",
    "to_json_value",
]
