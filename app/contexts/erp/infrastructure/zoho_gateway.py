from __future__ import annotations

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Callable

from app.contexts.erp.domain.contracts import ErpPage, ExternalRecord, normalize_modified_at
from app.contexts.erp.domain.gateway import (
    ErpAuthError,
    ErpGateway,
    ErpGatewayError,
    ErpPermanentError,
    ErpTransientError,
)
from app.contexts.erp.infrastructure.mappers.catalog_mapper import STOREFRONT_REF_FIELD
from app.contexts.erp.infrastructure.mappers.zoho_errors import classify_api_code, classify_http_failure
from app.contexts.erp.infrastructure.mappers.zoho_payloads import (
    map_customer_to_contact,
    map_order_to_sales_order,
)
from app.contexts.erp.infrastructure.token_cache import TokenCache


@dataclass
class HttpResponse:
    status: int
    body: bytes = b""
    headers: dict = field(default_factory=dict)


Transport = Callable[[str, str, dict, "bytes | None", float], HttpResponse]
CallHook = Callable[[str, str, int, bool, float], None]


@dataclass(frozen=True)
class _KindSpec:
    service: str
    path: str
    list_key: str
    record_key: str
    id_field: str


_KINDS: dict[str, _KindSpec] = {
    "items": _KindSpec("inventory", "items", "items", "item", "item_id"),
    "contacts": _KindSpec("books", "contacts", "contacts", "contact", "contact_id"),
    "invoices": _KindSpec("books", "invoices", "invoices", "invoice", "invoice_id"),
    "salesorders": _KindSpec("books", "salesorders", "salesorders", "salesorder", "salesorder_id"),
}


def urllib_transport(method: str, url: str, headers: dict, data: bytes | None, timeout: float) -> HttpResponse:
    request = urllib.request.Request(url, data=data, headers=headers, method=method.upper())
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return HttpResponse(int(response.status), response.read(), dict(response.headers.items()))
    except urllib.error.HTTPError as exc:
        body = exc.read() if exc.fp else b""
        return HttpResponse(int(exc.code), body, dict(exc.headers.items()) if exc.headers else {})
    except urllib.error.URLError as exc:
        raise ErpTransientError(f"ERP connection error: {exc.reason}", code="connection_error") from exc
    except (TimeoutError, OSError) as exc:
        raise ErpTransientError(f"ERP connection error: {exc}", code="timeout") from exc


def _decode_json(body: bytes) -> object:
    if not body:
        return {}
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ErpTransientError("ERP returned malformed JSON.", code="malformed_json") from exc


def _header(headers: dict, name: str) -> str | None:
    lowered = name.lower()
    for key, value in (headers or {}).items():
        if str(key).lower() == lowered:
            return value
    return None


class ZohoErpGateway(ErpGateway):
    """Zoho Inventory (items) + Zoho Books (contacts, sales orders, invoices)."""

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        refresh_token: str | None,
        organization_id: str | None,
        accounts_url: str,
        inventory_base_url: str,
        books_base_url: str,
        timeout_seconds: float = 20.0,
        page_size: int = 200,
        refresh_margin_seconds: float = 60.0,
        transport: Transport | None = None,
        token_cache: TokenCache | None = None,
        on_call: CallHook | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_id = str(client_id or "").strip()
        self._client_secret = str(client_secret or "").strip()
        self._refresh_token = str(refresh_token or "").strip()
        self._organization_id = str(organization_id or "").strip()
        self._accounts_url = accounts_url
        self._base_urls = {
            "inventory": inventory_base_url.rstrip("/"),
            "books": books_base_url.rstrip("/"),
        }
        self._timeout = max(1.0, float(timeout_seconds))
        self._page_size = max(1, min(200, int(page_size)))
        self._transport = transport or urllib_transport
        self._on_call = on_call
        self.token_cache = token_cache or TokenCache(
            self._refresh_access_token,
            refresh_margin_seconds=refresh_margin_seconds,
            clock=clock,
        )

    def fetch_page(self, kind: str, page: int, since: str | None = None) -> ErpPage:
        spec = self._spec(kind)
        page = max(1, int(page))
        query = {
            "page": str(page),
            "per_page": str(self._page_size),
            "sort_column": "last_modified_time",
            "sort_order": "D",
        }
        body = self._call_json(kind, "GET", self._url(spec, query=query))
        raw_records = body.get(spec.list_key) if isinstance(body, dict) else None
        records = [
            ExternalRecord.from_payload(kind, item, spec.id_field)
            for item in (raw_records if isinstance(raw_records, list) else [])
        ]
        page_context = body.get("page_context") if isinstance(body, dict) else None
        has_more = bool((page_context or {}).get("has_more_page")) if isinstance(page_context, dict) else False

        # Pages are sorted newest first: once a record predates the watermark the rest are older too.
        watermark = normalize_modified_at(since)
        if has_more and watermark and records:
            oldest = records[-1].modified_at
            if oldest and oldest < watermark:
                has_more = False
        return ErpPage(records=records, has_more=has_more, page=page)

    def fetch_record(self, kind: str, external_id: str) -> ExternalRecord | None:
        spec = self._spec(kind)
        identifier = str(external_id or "").strip()
        if not identifier:
            return None
        try:
            body = self._call_json(kind, "GET", self._url(spec, suffix=urllib.parse.quote(identifier, safe="")))
        except ErpPermanentError as exc:
            if exc.code == "http_404":
                return None
            raise
        record = body.get(spec.record_key) if isinstance(body, dict) else None
        if not isinstance(record, dict):
            return None
        return ExternalRecord.from_payload(kind, record, spec.id_field)

    def push_record(self, kind: str, payload: dict, idempotency_key: str) -> str:
        spec = self._spec(kind)
        key = str(idempotency_key or "").strip()
        if kind == "contacts":
            erp_payload = map_customer_to_contact(payload, key)
        elif kind == "salesorders":
            erp_payload = map_order_to_sales_order(payload, key)
        else:
            raise ErpPermanentError(f"push not supported for {kind}", code="kind_not_supported")

        existing_id = self._find_by_idempotency_key(kind, spec, payload, key)
        if existing_id:
            return existing_id

        body = self._call_json(kind, "POST", self._url(spec), payload=erp_payload, idempotency_key=key)
        rejection = classify_api_code(body)
        if rejection is not None:
            raise rejection
        record = body.get(spec.record_key) if isinstance(body, dict) else None
        external_id = str((record or {}).get(spec.id_field) or "").strip() if isinstance(record, dict) else ""
        if not external_id:
            raise ErpPermanentError(f"ERP did not return {spec.id_field}.", code="missing_id")
        return external_id

    def test_connection(self) -> dict:
        try:
            self.token_cache.get_token()
            page = self.fetch_page("items", 1)
        except ErpGatewayError as exc:
            return {"ok": False, "message": str(exc)}
        return {"ok": True, "message": f"Connected. {len(page.records)} items on the first page."}

    def _find_by_idempotency_key(self, kind: str, spec: _KindSpec, payload: dict, key: str) -> str | None:
        if kind == "salesorders":
            query = {"reference_number": key}
            match_field = "reference_number"
        else:
            email = str(payload.get("email") or "").strip().lower()
            if not email:
                return None
            query = {"email": email}
            match_field = STOREFRONT_REF_FIELD
        body = self._call_json(kind, "GET", self._url(spec, query=query))
        candidates = body.get(spec.list_key) if isinstance(body, dict) else None
        for candidate in candidates if isinstance(candidates, list) else []:
            if not isinstance(candidate, dict):
                continue
            if str(candidate.get(match_field) or "").strip() == key:
                found = str(candidate.get(spec.id_field) or "").strip()
                if found:
                    return found
        return None

    def _spec(self, kind: str) -> _KindSpec:
        spec = _KINDS.get(str(kind or "").strip().lower())
        if spec is None:
            raise ErpPermanentError(f"unsupported ERP kind: {kind}", code="kind_not_supported")
        return spec

    def _url(self, spec: _KindSpec, *, suffix: str | None = None, query: dict | None = None) -> str:
        if not self._organization_id:
            raise ErpAuthError("ERP organization id not configured.", code="not_configured")
        path = f"{self._base_urls[spec.service]}/{spec.path}"
        if suffix:
            path = f"{path}/{suffix}"
        params = {"organization_id": self._organization_id}
        params.update({key: value for key, value in (query or {}).items() if value not in (None, "")})
        return f"{path}?{urllib.parse.urlencode(params)}"

    def _call_json(
        self,
        kind: str,
        method: str,
        url: str,
        *,
        payload: dict | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        data = None
        if payload is not None:
            data = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")

        for attempt in (1, 2):
            headers = {
                "Accept": "application/json",
                "Authorization": f"Zoho-oauthtoken {self.token_cache.get_token()}",
            }
            if data is not None:
                headers["Content-Type"] = "application/json"
            if idempotency_key:
                headers["X-Idempotency-Key"] = idempotency_key
            response = self._send(kind, method, url, headers, data)
            if response.status == 401 and attempt == 1:
                self.token_cache.invalidate()
                continue
            if response.status >= 400:
                raise classify_http_failure(
                    response.status,
                    _safe_body(response.body),
                    _header(response.headers, "Retry-After"),
                )
            body = _decode_json(response.body)
            if not isinstance(body, dict):
                raise ErpTransientError("ERP returned a non-object JSON body.", code="malformed_json")
            return body
        raise ErpAuthError("ERP rejected the refreshed token.", code="http_401")

    def _send(self, kind: str, method: str, url: str, headers: dict, data: bytes | None) -> HttpResponse:
        started = time.perf_counter()
        status = 0
        try:
            response = self._transport(method, url, headers, data, self._timeout)
            status = int(response.status)
            return response
        finally:
            self._report(kind, method, status, time.perf_counter() - started)

    def _report(self, kind: str, method: str, status: int, elapsed_seconds: float) -> None:
        if self._on_call is None:
            return
        self._on_call(kind, method.upper(), status, 200 <= status < 400, elapsed_seconds * 1000.0)

    def _refresh_access_token(self) -> tuple[str, float]:
        if not (self._client_id and self._client_secret and self._refresh_token):
            raise ErpAuthError("ERP credentials not configured.", code="not_configured")
        form = urllib.parse.urlencode(
            {
                "refresh_token": self._refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "refresh_token",
            }
        ).encode("utf-8")
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}
        response = self._send("token", "POST", self._accounts_url, headers, form)
        if response.status >= 400:
            raise ErpAuthError(f"Token refresh failed: HTTP {response.status}", code=f"http_{response.status}")
        try:
            body = _decode_json(response.body)
        except ErpTransientError as exc:
            raise ErpAuthError("Token refresh returned malformed JSON.", code="malformed_json") from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            message = body.get("error") if isinstance(body, dict) else None
            raise ErpAuthError(f"Token refresh rejected: {message or 'no access_token'}", code="refresh_rejected")
        return str(body["access_token"]), float(body.get("expires_in") or 3600)


def _safe_body(body: bytes) -> object:
    if not body:
        return ""
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return body.decode("utf-8", errors="replace")
