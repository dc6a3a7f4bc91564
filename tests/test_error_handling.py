import unittest
from unittest.mock import patch

from app.contexts.erp.domain.gateway import ErpAuthError, ErpPermanentError, ErpRateLimitedError, ErpTransientError
from app.errors import classify_erp_failure
from app.ui_strings import error_message
from tests.helpers.fakes import build_test_app


class ErrorHandlingApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db, self.app = build_test_app("error_api", PROPAGATE_EXCEPTIONS=False)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def test_validation_error_payload(self) -> None:
        response = self.client.post("/api/storefront/customers", json={"company_name": "No email"})

        self.assertEqual(response.status_code, 400)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "email_required")
        self.assertEqual(payload.get("message"), error_message("email_required"))
        self.assertTrue((payload.get("request_id") or "").strip())
        self.assertEqual(payload["request_id"], response.headers.get("X-Request-Id"))

    def test_conflict_for_duplicate_registration(self) -> None:
        first = self.client.post("/api/storefront/customers", json={"email": "dup@shop.example"})
        second = self.client.post("/api/storefront/customers", json={"email": "DUP@shop.example"})

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.get_json().get("error"), "email_already_registered")

    def test_not_found_for_unknown_order(self) -> None:
        response = self.client.post("/api/admin/orders/404/approve")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json().get("error"), "order_not_found")

    def test_erp_failure_escaping_a_route_is_mapped(self) -> None:
        with patch("app.routes.admin_routes.top_sellers", side_effect=ErpRateLimitedError("slow down", retry_after=30)):
            response = self.client.get("/api/admin/sales/top-sellers")

        self.assertEqual(response.status_code, 503)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "erp_rate_limited")
        self.assertEqual(payload.get("message"), error_message("erp_rate_limited"))

    def test_stack_trace_not_exposed_for_unhandled_error(self) -> None:
        with patch("app.routes.admin_routes.top_sellers", side_effect=RuntimeError("stack_secret_token")):
            response = self.client.get("/api/admin/sales/top-sellers")

        self.assertEqual(response.status_code, 500)
        payload = response.get_json()
        self.assertEqual(payload.get("error"), "unexpected_error")
        self.assertEqual(payload.get("message"), error_message("unexpected_error"))
        body = response.get_data(as_text=True)
        self.assertNotIn("Traceback", body)
        self.assertNotIn("stack_secret_token", body)


class ClassifyErpFailureTest(unittest.TestCase):
    def test_http_status_per_failure_class(self) -> None:
        self.assertEqual(classify_erp_failure(ErpAuthError("x"))[2], 502)
        self.assertTrue(classify_erp_failure(ErpAuthError("x"))[3])
        self.assertEqual(classify_erp_failure(ErpRateLimitedError("x"))[2], 503)
        self.assertEqual(classify_erp_failure(ErpPermanentError("x"))[2], 422)
        self.assertEqual(classify_erp_failure(ErpTransientError("x"))[0], "erp_temporarily_unavailable")


if __name__ == "__main__":
    unittest.main()
