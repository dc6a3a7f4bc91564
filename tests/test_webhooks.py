import json
import unittest
from datetime import datetime, timezone
from unittest.mock import patch
from zoneinfo import ZoneInfo

from app.contexts.erp.infrastructure.simulator.deterministic_erp import DeterministicErpSimulator
from app.contexts.erp.interfaces.workers.runtime import set_gateway
from app.contexts.sync.engine import ReconciliationEngine
from app.contexts.webhooks.event_log import EventLog, get_event_logs
from app.contexts.webhooks.ingestor import get_webhook_ingestor
from app.db import close_db, get_db
from app.security import sign_payload
from tests.helpers.fakes import build_test_app, make_item


SECRET = "test-webhook-secret"


class WebhookEndpointTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db, self.app = build_test_app("webhooks")
        self.erp = DeterministicErpSimulator(item_count=3)
        set_gateway(self.app, self.erp)
        self.client = self.app.test_client()

    def tearDown(self) -> None:
        get_webhook_ingestor(self.app).shutdown()
        self._temp_db.cleanup()

    def _post(self, subsystem: str, payload: dict, *, action: str | None = "update", signature: str | None = "sign", headers=None):
        body = json.dumps(payload).encode("utf-8")
        request_headers = dict(headers or {})
        if signature == "sign":
            request_headers["X-Webhook-Signature"] = "sha256=" + sign_payload(SECRET, body)
        elif signature:
            request_headers["X-Webhook-Signature"] = signature
        url = f"/api/webhooks/erp/{subsystem}"
        if action:
            url += f"?action={action}"
        return self.client.post(url, data=body, content_type="application/json", headers=request_headers)

    def _product(self, external_id: str) -> dict:
        with self.app.app_context():
            row = get_db().execute("SELECT * FROM products WHERE external_id = ?", (external_id,)).fetchone()
            result = dict(row) if row else {}
            close_db()
        return result

    def test_missing_credentials_are_rejected(self) -> None:
        response = self._post("items", {"item": make_item(1)}, signature=None)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "webhook_signature_missing")
        webhook_log, _call_log = get_event_logs(self.app)
        event = webhook_log.recent(1)[0]
        self.assertFalse(event["success"])
        self.assertEqual(event["detail"], "signature_missing")

    def test_wrong_signature_is_forbidden(self) -> None:
        response = self._post("items", {"item": make_item(1)}, signature="deadbeef")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "webhook_signature_invalid")
        self.assertEqual(self._product("I-001"), {})

    def test_shared_secret_header_is_accepted(self) -> None:
        response = self._post(
            "items", {"item": make_item(1)}, action="create", signature=None, headers={"X-Webhook-Secret": SECRET}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["result"]["result"], "created")

    def test_unknown_subsystem_is_a_client_error(self) -> None:
        response = self._post("purchaseorders", {"purchaseorder_id": "1"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "subsystem_not_supported")

    def test_item_events_merge_and_delist(self) -> None:
        created = self._post("items", {"item": make_item(1)}, action="create")
        updated = self._post("items", {"item": make_item(1, rate=42.0)}, action="update")
        deleted = self._post("items", {"item_id": "I-001"}, action="delete")

        self.assertEqual(created.get_json()["result"]["result"], "created")
        self.assertEqual(updated.get_json()["result"]["result"], "updated")
        self.assertEqual(deleted.get_json()["result"]["result"], "delisted")
        product = self._product("I-001")
        self.assertEqual(product["base_price"], 42.0)
        self.assertEqual(product["delisted"], 1)

        webhook_log, _call_log = get_event_logs(self.app)
        self.assertEqual([event["action"] for event in webhook_log.recent()], ["delete", "update", "create"])
        self.assertEqual(webhook_log.stats()["today"], {"total": 3, "successful": 3, "failed": 0})

    def test_action_may_come_from_the_payload(self) -> None:
        self._post("items", {"item": make_item(2)}, action="create")

        response = self._post("items", {"action": "deleted", "item": {"item_id": "I-002"}}, action=None)

        self.assertEqual(response.get_json()["action"], "deleted")
        self.assertEqual(self._product("I-002")["delisted"], 1)

    def test_id_only_notification_reads_record_from_erp(self) -> None:
        response = self._post("items", {"item_id": "SIM-0002"})

        self.assertEqual(response.get_json()["result"]["result"], "created")
        self.assertEqual(self._product("SIM-0002")["name"], "Simulated item 2")
        self.assertIn(("items", "GET"), self.erp.calls)

    def test_invoice_events_update_units_sold(self) -> None:
        self._post("items", {"item": make_item(1)}, action="create")
        invoice = {
            "invoice_id": "INV-9",
            "status": "sent",
            "line_items": [{"item_id": "I-001", "quantity": 3}],
        }

        self._post("invoices", {"invoice": invoice}, action="create")
        self.assertEqual(self._product("I-001")["units_sold"], 3)

        self._post("invoices", {"invoice": dict(invoice, status="void")}, action="update")
        self.assertEqual(self._product("I-001")["units_sold"], 0)

    def test_unusable_record_is_acknowledged_as_failed(self) -> None:
        response = self._post("items", {"item": {"name": "No id"}}, action="create")

        self.assertEqual(response.status_code, 200)
        result = response.get_json()["result"]
        self.assertEqual(result["result"], "failed")
        webhook_log, _call_log = get_event_logs(self.app)
        self.assertEqual(webhook_log.stats()["today"]["failed"], 1)

    def test_background_mode_acknowledges_before_merging(self) -> None:
        self.app.config["WEBHOOK_PROCESS_INLINE"] = False

        response = self._post("items", {"item": make_item(5)}, action="create")
        get_webhook_ingestor(self.app).shutdown(wait=True)

        payload = response.get_json()
        self.assertTrue(payload["queued"])
        self.assertNotIn("result", payload)
        self.assertEqual(self._product("I-005")["name"], "Item 5")
        webhook_log, _call_log = get_event_logs(self.app)
        self.assertEqual(webhook_log.recent(1)[0]["detail"], "I-005: created")
        self.assertEqual(webhook_log.stats()["today"], {"total": 1, "successful": 1, "failed": 0})

    def test_background_failure_is_logged_as_failed_event(self) -> None:
        self.app.config["WEBHOOK_PROCESS_INLINE"] = False

        with patch.object(ReconciliationEngine, "reconcile_record", side_effect=RuntimeError("boom")):
            response = self._post("items", {"item": make_item(6)}, action="create")
            get_webhook_ingestor(self.app).shutdown(wait=True)

        self.assertEqual(response.status_code, 200)
        webhook_log, _call_log = get_event_logs(self.app)
        event = webhook_log.recent(1)[0]
        self.assertFalse(event["success"])
        self.assertEqual(event["detail"], "RuntimeError: boom")
        self.assertEqual(self._product("I-006"), {})


class EventLogTest(unittest.TestCase):
    def _at(self, *args) -> datetime:
        return datetime(*args, tzinfo=timezone.utc)

    def test_ring_buffer_keeps_newest_events(self) -> None:
        log = EventLog(3, clock=lambda: self._at(2024, 5, 1, 12))
        for index in range(5):
            log.record("items", f"a{index}", True)

        self.assertEqual([event["action"] for event in log.recent()], ["a4", "a3", "a2"])
        self.assertEqual([event["action"] for event in log.recent(1)], ["a4"])
        stats = log.stats()
        self.assertEqual(stats["buffered"], 3)
        self.assertEqual(stats["today"]["total"], 5)
        self.assertEqual(stats["last_received"], "2024-05-01T12:00:00Z")

    def test_tallies_roll_over_by_day_and_month(self) -> None:
        log = EventLog(10, clock=lambda: self._at(2024, 5, 31, 9))
        log.record("items", "create", True, timestamp=self._at(2024, 5, 31, 9))
        log.record("items", "update", False, timestamp=self._at(2024, 5, 31, 10))

        self.assertFalse(log.roll_over(self._at(2024, 5, 31, 23)))
        self.assertEqual(log.stats()["today"], {"total": 2, "successful": 1, "failed": 1})

        self.assertTrue(log.roll_over(self._at(2024, 6, 1, 0, 5)))
        stats = log.stats()
        self.assertEqual(stats["today"]["total"], 0)
        self.assertEqual(stats["this_month"]["total"], 0)
        self.assertEqual(stats["by_action"], {})
        self.assertEqual(stats["buffered"], 2)

    def test_day_boundary_follows_configured_timezone(self) -> None:
        tz = ZoneInfo("America/New_York")
        log = EventLog(10, tz=tz, clock=lambda: self._at(2024, 5, 2, 1))
        log.record("contacts", "update", True, timestamp=self._at(2024, 5, 2, 1))

        self.assertEqual(log.stats()["day"], "2024-05-01")
        self.assertFalse(log.roll_over(self._at(2024, 5, 2, 3, 59)))
        self.assertTrue(log.roll_over(self._at(2024, 5, 2, 4, 0)))

    def test_stats_do_not_reset_tallies(self) -> None:
        log = EventLog(10, clock=lambda: self._at(2024, 5, 1, 8))
        log.record("items", "create", True)
        log.stats()
        log.stats()

        self.assertEqual(log.stats()["by_action"], {"items.create": 1})


if __name__ == "__main__":
    unittest.main()
