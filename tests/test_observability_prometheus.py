import json
import logging
import unittest

from app.contexts.erp.infrastructure.simulator.deterministic_erp import DeterministicErpSimulator
from app.contexts.erp.interfaces.workers.runtime import erp_call_hook, set_gateway
from app.observability import JsonLogFormatter, reset_metrics_for_tests, set_log_request_id
from tests.helpers.fakes import build_test_app


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db, self.app = build_test_app("observability_metrics")
        set_gateway(self.app, DeterministicErpSimulator(item_count=2, on_call=erp_call_hook(self.app)))
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        self.client.post("/api/admin/sync/items")
        self.client.post("/api/storefront/customers", json={"email": "buyer@shop.example"})

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        self.assertIn("text/plain", response.headers.get("Content-Type") or "")

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("http_request_duration_ms_bucket", payload)
        self.assertIn('erp_api_calls_total{kind="items",method="GET",outcome="success"} 1', payload)
        self.assertIn('sync_runs_total{kind="items",status="completed"} 1', payload)
        self.assertIn('sync_records_total{kind="items",outcome="created"} 2', payload)
        self.assertIn('job_queue_size{state="pending"} 1', payload)
        self.assertIn("job_queue_retry_total", payload)
        self.assertIn("job_queue_dead_letter_total", payload)
        self.assertIn("job_queue_deferred_total", payload)
        self.assertIn("webhook_events_total", payload)
        self.assertIn('erp_circuit_state{state="closed"} 1', payload)

    def test_erp_calls_are_counted_in_call_log(self) -> None:
        self.client.post("/api/admin/sync/items")

        status = self.client.get("/api/admin/erp/status").get_json()

        self.assertEqual(status["api_calls"]["today"]["total"], 1)
        self.assertEqual(status["api_calls"]["by_action"], {"items.get": 1})

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="app",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="worker_log",
            args=(),
            exc_info=None,
        )
        record.kind = "items"
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")
        self.assertEqual(parsed.get("kind"), "items")

    def test_health_reports_queue_and_circuit(self) -> None:
        self.client.post("/api/storefront/customers", json={"email": "buyer@shop.example"})

        payload = self.client.get("/health").get_json() or {}

        self.assertEqual(payload.get("status"), "ok")
        self.assertEqual(payload.get("circuit"), "closed")
        self.assertEqual(payload.get("erp_mode"), "simulator")
        worker = payload.get("worker") or {}
        self.assertIn("backlog_critical", worker)
        self.assertEqual(worker["queue"]["pending_jobs"], 1)


if __name__ == "__main__":
    unittest.main()
