import json
import unittest

from app.contexts.erp.domain.gateway import (
    ErpAuthError,
    ErpPermanentError,
    ErpRateLimitedError,
    ErpTransientError,
)
from app.contexts.erp.infrastructure.mappers.zoho_errors import classify_api_code, classify_http_failure
from app.contexts.erp.infrastructure.token_cache import TokenCache
from app.contexts.erp.infrastructure.zoho_gateway import HttpResponse, ZohoErpGateway
from tests.helpers.fakes import FakeClock


ACCOUNTS_URL = "https://accounts.example.test/oauth/v2/token"


def _json(status: int, body: dict, headers: dict | None = None) -> HttpResponse:
    return HttpResponse(status, json.dumps(body).encode("utf-8"), headers or {})


class FakeTransport:
    def __init__(self, responses=None, *, expires_in: int = 3600) -> None:
        self.responses = list(responses or [])
        self.calls = []
        self.token_requests = 0
        self.expires_in = expires_in

    def __call__(self, method, url, headers, data, timeout):
        self.calls.append({"method": method, "url": url, "headers": dict(headers), "data": data})
        if url.startswith(ACCOUNTS_URL):
            self.token_requests += 1
            return _json(200, {"access_token": f"token-{self.token_requests}", "expires_in": self.expires_in})
        return self.responses.pop(0)

    def api_calls(self):
        return [call for call in self.calls if not call["url"].startswith(ACCOUNTS_URL)]


def _gateway(transport, *, clock=None, client_id="client", on_call=None) -> ZohoErpGateway:
    return ZohoErpGateway(
        client_id=client_id,
        client_secret="secret",
        refresh_token="refresh",
        organization_id="org-1",
        accounts_url=ACCOUNTS_URL,
        inventory_base_url="https://inventory.example.test/v1",
        books_base_url="https://books.example.test/v3",
        transport=transport,
        clock=clock or FakeClock(),
        on_call=on_call,
    )


def _items_page(*items, has_more=False) -> HttpResponse:
    return _json(200, {"code": 0, "items": list(items), "page_context": {"has_more_page": has_more}})


class ZohoTokenCacheTest(unittest.TestCase):
    def test_token_reused_until_refresh_margin(self) -> None:
        clock = FakeClock(0.0)
        issued = []

        def refresh():
            issued.append(len(issued) + 1)
            return f"token-{len(issued)}", 120.0

        cache = TokenCache(refresh, refresh_margin_seconds=60, clock=clock)
        self.assertEqual(cache.get_token(), "token-1")
        clock.advance(30)
        self.assertEqual(cache.get_token(), "token-1")
        clock.advance(31)
        self.assertEqual(cache.get_token(), "token-2")
        self.assertEqual(cache.refresh_count, 2)

    def test_invalidate_forces_refresh(self) -> None:
        cache = TokenCache(lambda: ("token", 3600.0), clock=FakeClock())
        cache.get_token()
        cache.invalidate()
        self.assertFalse(cache.snapshot()["has_token"])
        cache.get_token()
        self.assertEqual(cache.refresh_count, 2)

    def test_refresh_failure_surfaces_as_auth_error(self) -> None:
        def refresh():
            raise ErpTransientError("accounts down")

        cache = TokenCache(refresh, clock=FakeClock())
        with self.assertRaises(ErpAuthError):
            cache.get_token()

    def test_empty_token_is_rejected(self) -> None:
        cache = TokenCache(lambda: ("", 3600.0), clock=FakeClock())
        with self.assertRaises(ErpAuthError):
            cache.get_token()


class ZohoGatewayTest(unittest.TestCase):
    def test_token_cached_across_calls(self) -> None:
        transport = FakeTransport([_items_page(), _items_page()])
        gateway = _gateway(transport)

        gateway.fetch_page("items", 1)
        gateway.fetch_page("items", 2)

        self.assertEqual(transport.token_requests, 1)
        auth_headers = {call["headers"]["Authorization"] for call in transport.api_calls()}
        self.assertEqual(auth_headers, {"Zoho-oauthtoken token-1"})

    def test_fetch_page_maps_records_and_query(self) -> None:
        transport = FakeTransport(
            [_items_page({"item_id": "10", "name": "A", "last_modified_time": "2024-05-01T10:00:00-0400"}, has_more=True)]
        )
        page = _gateway(transport).fetch_page("items", 3)

        self.assertTrue(page.has_more)
        self.assertEqual(page.page, 3)
        self.assertEqual(page.records[0].external_id, "10")
        self.assertEqual(page.records[0].modified_at, "2024-05-01T14:00:00Z")
        url = transport.api_calls()[0]["url"]
        self.assertTrue(url.startswith("https://inventory.example.test/v1/items?"))
        self.assertIn("organization_id=org-1", url)
        self.assertIn("page=3", url)

    def test_fetch_page_stops_once_records_predate_since(self) -> None:
        transport = FakeTransport(
            [
                _items_page(
                    {"item_id": "2", "name": "B", "last_modified_time": "2024-05-02T00:00:00Z"},
                    {"item_id": "1", "name": "A", "last_modified_time": "2024-04-01T00:00:00Z"},
                    has_more=True,
                )
            ]
        )
        page = _gateway(transport).fetch_page("items", 1, since="2024-05-01T00:00:00Z")
        self.assertFalse(page.has_more)

    def test_401_invalidates_token_and_retries_once(self) -> None:
        transport = FakeTransport([_json(401, {"message": "expired"}), _items_page()])
        gateway = _gateway(transport)

        gateway.fetch_page("items", 1)

        self.assertEqual(transport.token_requests, 2)
        self.assertEqual(len(transport.api_calls()), 2)

    def test_repeated_401_raises_auth_error(self) -> None:
        transport = FakeTransport([_json(401, {}), _json(401, {})])
        with self.assertRaises(ErpAuthError):
            _gateway(transport).fetch_page("items", 1)

    def test_missing_credentials_is_auth_error(self) -> None:
        transport = FakeTransport([])
        with self.assertRaises(ErpAuthError) as ctx:
            _gateway(transport, client_id="").fetch_page("items", 1)
        self.assertEqual(ctx.exception.code, "not_configured")
        self.assertEqual(transport.calls, [])

    def test_429_carries_retry_after(self) -> None:
        transport = FakeTransport([_json(429, {"message": "slow down"}, {"Retry-After": "12"})])
        with self.assertRaises(ErpRateLimitedError) as ctx:
            _gateway(transport).fetch_page("items", 1)
        self.assertEqual(ctx.exception.retry_after, 12.0)

    def test_server_error_is_transient_and_client_error_permanent(self) -> None:
        with self.assertRaises(ErpTransientError):
            _gateway(FakeTransport([_json(503, {})])).fetch_page("contacts", 1)
        with self.assertRaises(ErpPermanentError):
            _gateway(FakeTransport([_json(400, {"message": "bad filter"})])).fetch_page("contacts", 1)

    def test_fetch_record_returns_none_on_404(self) -> None:
        transport = FakeTransport([_json(404, {"message": "gone"})])
        self.assertIsNone(_gateway(transport).fetch_record("contacts", "C-1"))

    def test_push_contact_reuses_remote_record_with_same_reference(self) -> None:
        transport = FakeTransport(
            [_json(200, {"code": 0, "contacts": [{"contact_id": "C-77", "cf_storefront_ref": "create_customer:customer:5"}]})]
        )
        external_id = _gateway(transport).push_record(
            "contacts", {"email": "buyer@example.com"}, "create_customer:customer:5"
        )

        self.assertEqual(external_id, "C-77")
        self.assertEqual([call["method"] for call in transport.api_calls()], ["GET"])

    def test_push_sales_order_posts_with_idempotency_key(self) -> None:
        transport = FakeTransport(
            [
                _json(200, {"code": 0, "salesorders": []}),
                _json(201, {"code": 0, "salesorder": {"salesorder_id": "SO-1"}}),
            ]
        )
        payload = {
            "order_number": "WEB-1",
            "customer_external_id": "C-1",
            "lines": [{"item_external_id": "I-1", "quantity": 2, "unit_price": 5.0}],
        }
        external_id = _gateway(transport).push_record("salesorders", payload, "push_order:order:9")

        self.assertEqual(external_id, "SO-1")
        post = transport.api_calls()[1]
        self.assertEqual(post["method"], "POST")
        self.assertEqual(post["headers"]["X-Idempotency-Key"], "push_order:order:9")
        body = json.loads(post["data"].decode("utf-8"))
        self.assertEqual(body["reference_number"], "push_order:order:9")
        self.assertEqual(body["line_items"], [{"item_id": "I-1", "quantity": 2, "rate": 5.0}])

    def test_business_rejection_is_permanent(self) -> None:
        transport = FakeTransport(
            [
                _json(200, {"code": 0, "salesorders": []}),
                _json(200, {"code": 1001, "message": "Customer inactive"}),
            ]
        )
        payload = {"customer_external_id": "C-1", "lines": [{"item_external_id": "I-1", "quantity": 1}]}
        with self.assertRaises(ErpPermanentError) as ctx:
            _gateway(transport).push_record("salesorders", payload, "push_order:order:1")
        self.assertEqual(ctx.exception.code, "api_1001")

    def test_calls_are_reported_to_hook(self) -> None:
        reported = []
        transport = FakeTransport([_json(500, {})])
        gateway = _gateway(transport, on_call=lambda kind, method, status, ok, ms: reported.append((kind, method, status, ok)))

        with self.assertRaises(ErpTransientError):
            gateway.fetch_page("invoices", 1)

        self.assertIn(("token", "POST", 200, True), reported)
        self.assertIn(("invoices", "GET", 500, False), reported)


class ZohoErrorClassificationTest(unittest.TestCase):
    def test_http_status_mapping(self) -> None:
        self.assertIsInstance(classify_http_failure(401), ErpAuthError)
        self.assertIsInstance(classify_http_failure(403), ErpAuthError)
        self.assertIsInstance(classify_http_failure(408), ErpTransientError)
        self.assertIsInstance(classify_http_failure(502), ErpTransientError)
        self.assertIsInstance(classify_http_failure(0), ErpTransientError)
        self.assertIsInstance(classify_http_failure(422, {"message": "bad"}), ErpPermanentError)

    def test_rate_limit_defaults_to_one_second(self) -> None:
        error = classify_http_failure(429, "", None)
        self.assertIsInstance(error, ErpRateLimitedError)
        self.assertEqual(error.retry_after, 1.0)

    def test_api_code_zero_is_success(self) -> None:
        self.assertIsNone(classify_api_code({"code": 0}))
        self.assertIsInstance(classify_api_code({"code": 4}), ErpPermanentError)
        self.assertIsInstance(classify_api_code(["not", "an", "object"]), ErpPermanentError)


if __name__ == "__main__":
    unittest.main()
