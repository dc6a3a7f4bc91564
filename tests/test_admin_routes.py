import unittest

from app.contexts.erp.domain.gateway import ErpAuthError
from app.contexts.erp.infrastructure.simulator.deterministic_erp import DeterministicErpSimulator, transient
from app.contexts.erp.interfaces.workers.runtime import set_gateway
from tests.helpers.fakes import build_test_app


OPERATOR_TOKEN = "operator-secret"


class AdminRoutesTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db, self.app = build_test_app(
            "admin_routes",
            AUTH_ENABLED=True,
            OPERATOR_API_TOKEN=OPERATOR_TOKEN,
            SYNC_MANUAL_LOCK_TIMEOUT_SECONDS=0,
        )
        self.erp = DeterministicErpSimulator(item_count=4)
        set_gateway(self.app, self.erp)
        self.client = self.app.test_client()
        self.headers = {"X-Operator-Token": OPERATOR_TOKEN}

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _register(self, email: str) -> dict:
        response = self.client.post("/api/storefront/customers", json={"email": email, "company_name": "Shop"})
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def test_admin_requires_operator_token(self) -> None:
        missing = self.client.get("/api/admin/jobs")
        wrong = self.client.get("/api/admin/jobs", headers={"X-Operator-Token": "nope"})
        ok = self.client.get("/api/admin/jobs", headers=self.headers)

        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.get_json()["error"], "auth_required")
        self.assertEqual(wrong.status_code, 403)
        self.assertEqual(wrong.get_json()["error"], "permission_denied")
        self.assertEqual(ok.status_code, 200)

    def test_storefront_and_health_stay_public(self) -> None:
        self.assertEqual(self.client.get("/health").status_code, 200)
        self._register("buyer@shop.example")

    def test_manual_sync_and_history(self) -> None:
        response = self.client.post("/api/admin/sync/items", json={"full": True}, headers=self.headers)

        self.assertEqual(response.status_code, 200)
        run = response.get_json()["sync_run"]
        self.assertEqual((run["status"], run["sync_mode"], run["created"]), ("completed", "full", 4))

        history = self.client.get("/api/admin/sync/history?kind=items", headers=self.headers).get_json()["sync_runs"]
        self.assertEqual(history[0]["id"], run["sync_run_id"])
        self.assertEqual(history[0]["triggered_by"], "manual")

    def test_failed_sync_is_reported_as_bad_gateway(self) -> None:
        self.erp.fail_next("items", ErpAuthError("invalid refresh token"), operation="fetch")

        response = self.client.post("/api/admin/sync/items", headers=self.headers)

        self.assertEqual(response.status_code, 502)
        payload = response.get_json()
        self.assertEqual(payload["error"], "sync_failed")
        self.assertEqual(payload["sync_run"]["error_class"], "ErpAuthError")

    def test_unknown_sync_kind_is_rejected(self) -> None:
        response = self.client.post("/api/admin/sync/suppliers", headers=self.headers)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "kind_not_supported")

    def test_sync_while_running_is_a_conflict(self) -> None:
        from app.scheduler import get_sync_orchestrator

        lock = get_sync_orchestrator(self.app)._lock_for("items")
        lock.acquire()
        try:
            response = self.client.post("/api/admin/sync/items", headers=self.headers)
        finally:
            lock.release()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.get_json()["error"], "sync_in_progress")

    def test_job_listing_processing_and_retry(self) -> None:
        registered = self._register("buyer@shop.example")
        self.erp.fail_next("contacts", transient(), times=5)

        listing = self.client.get("/api/admin/jobs", headers=self.headers).get_json()
        self.assertEqual(listing["counts"]["pending"], 1)
        self.assertEqual([job["id"] for job in listing["pending"]], [registered["job_id"]])
        self.assertEqual(listing["failed"], [])

        processed = self.client.post("/api/admin/jobs/process", json={"limit": 5}, headers=self.headers)
        self.assertEqual(processed.get_json()["summary"]["requeued"], 1)

        detail = self.client.get(f"/api/admin/jobs/{registered['job_id']}", headers=self.headers).get_json()["job"]
        self.assertEqual((detail["status"], detail["attempts"]), ("pending", 1))
        self.assertEqual(detail["error_message"], "simulated timeout")

        retried = self.client.post(f"/api/admin/jobs/{registered['job_id']}/retry", headers=self.headers)
        self.assertEqual(retried.status_code, 200)
        self.assertEqual(retried.get_json()["job"]["attempts"], 0)

        filtered = self.client.get("/api/admin/jobs?status=pending", headers=self.headers).get_json()
        self.assertEqual(len(filtered["jobs"]), 1)

    def test_job_errors(self) -> None:
        missing = self.client.get("/api/admin/jobs/999", headers=self.headers)
        bad_status = self.client.get("/api/admin/jobs?status=archived", headers=self.headers)

        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.get_json()["error"], "job_not_found")
        self.assertEqual(bad_status.status_code, 400)

    def test_retry_of_completed_job_is_rejected(self) -> None:
        registered = self._register("buyer@shop.example")
        self.client.post("/api/admin/jobs/process", headers=self.headers)

        response = self.client.post(f"/api/admin/jobs/{registered['job_id']}/retry", headers=self.headers)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "job_already_completed")

    def test_erp_status_reports_calls_runs_and_queue(self) -> None:
        self.client.post("/api/admin/sync/items", headers=self.headers)

        payload = self.client.get("/api/admin/erp/status", headers=self.headers).get_json()

        self.assertEqual(payload["erp_mode"], "simulator")
        self.assertEqual(payload["last_runs"]["items"]["status"], "completed")
        self.assertIsNone(payload["last_runs"]["contacts"])
        self.assertIn("pending", payload["queue"])
        self.assertEqual(payload["circuit"]["state"], "closed")
        self.assertIn("items", payload["schedule"])

    def test_connection_check(self) -> None:
        ok = self.client.get("/api/admin/erp/connection", headers=self.headers)
        self.erp.fail_next("items", transient("down"), operation="fetch")
        down = self.client.get("/api/admin/erp/connection", headers=self.headers)

        self.assertEqual(ok.status_code, 200)
        self.assertTrue(ok.get_json()["ok"])
        self.assertEqual(down.status_code, 502)
        self.assertFalse(down.get_json()["ok"])

    def test_scheduler_status_and_config(self) -> None:
        status = self.client.get("/api/admin/scheduler/status", headers=self.headers).get_json()
        self.assertFalse(status["running"])

        updated = self.client.patch(
            "/api/admin/scheduler/config", json={"mode": "polling", "enabled": "false"}, headers=self.headers
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.get_json()["scheduler"]["mode"], "polling")
        self.assertFalse(updated.get_json()["scheduler"]["enabled"])

        invalid = self.client.patch("/api/admin/scheduler/config", json={"mode": "hourly"}, headers=self.headers)
        self.assertEqual(invalid.status_code, 400)
        self.assertEqual(invalid.get_json()["error"], "mode_invalid")

    def test_webhook_events_and_top_sellers(self) -> None:
        events = self.client.get("/api/admin/webhooks/events", headers=self.headers).get_json()
        sellers = self.client.get("/api/admin/sales/top-sellers", headers=self.headers).get_json()

        self.assertEqual(events["events"], [])
        self.assertEqual(events["stats"]["capacity"], 50)
        self.assertEqual(sellers["products"], [])


if __name__ == "__main__":
    unittest.main()
