from __future__ import annotations

import unittest

from app.contexts.erp.domain.gateway import ErpPermanentError, ErpTransientError
from app.contexts.erp.infrastructure.simulator.deterministic_erp import DeterministicErpSimulator, transient


class ErpSimulatorDeterministicTest(unittest.TestCase):
    def _customer(self, email: str = "buyer@shop.example") -> dict:
        return {"email": email, "contact_name": "Jane Buyer", "company_name": "Corner Shop"}

    def test_same_seed_yields_same_catalog(self) -> None:
        first = DeterministicErpSimulator(seed=7).fetch_page("items", 1)
        second = DeterministicErpSimulator(seed=7).fetch_page("items", 1)
        other = DeterministicErpSimulator(seed=8).fetch_page("items", 1)

        self.assertEqual([r.payload for r in first.records], [r.payload for r in second.records])
        self.assertNotEqual([r.payload["rate"] for r in first.records], [r.payload["rate"] for r in other.records])
        self.assertEqual(len(first.records), 12)

    def test_pages_are_newest_first_and_flag_more(self) -> None:
        simulator = DeterministicErpSimulator(item_count=5, page_size=2)

        pages = [simulator.fetch_page("items", number) for number in (1, 2, 3)]

        self.assertEqual([page.has_more for page in pages], [True, True, False])
        ids = [record.external_id for page in pages for record in page.records]
        self.assertEqual(ids, ["SIM-0005", "SIM-0004", "SIM-0003", "SIM-0002", "SIM-0001"])

    def test_push_with_same_key_creates_one_contact(self) -> None:
        simulator = DeterministicErpSimulator(seed_data=False)

        first = simulator.push_record("contacts", self._customer(), "create_customer:customer:1")
        second = simulator.push_record("contacts", self._customer(), "create_customer:customer:1")

        self.assertEqual(first, second)
        contacts = simulator.records("contacts")
        self.assertEqual(len(contacts), 1)
        self.assertEqual(contacts[0]["email"], "buyer@shop.example")
        self.assertEqual(contacts[0]["cf_storefront_ref"], "create_customer:customer:1")
        self.assertEqual(simulator.push_attempts["create_customer:customer:1"], 2)

    def test_scripted_failures_are_consumed_in_order(self) -> None:
        simulator = DeterministicErpSimulator(seed_data=False)
        simulator.fail_next("contacts", transient(), times=2, operation="push")

        for _ in range(2):
            with self.assertRaises(ErpTransientError):
                simulator.push_record("contacts", self._customer(), "key-1")
        external_id = simulator.push_record("contacts", self._customer(), "key-1")

        self.assertEqual(simulator.accepted_key("key-1"), external_id)
        self.assertEqual([method for _kind, method in simulator.calls], ["POST", "POST", "POST"])

    def test_failure_after_commit_keeps_the_remote_record(self) -> None:
        simulator = DeterministicErpSimulator(seed_data=False)
        simulator.fail_next("contacts", transient("lost response"), after_commit=True)

        with self.assertRaises(ErpTransientError):
            simulator.push_record("contacts", self._customer(), "key-2")

        self.assertIsNotNone(simulator.accepted_key("key-2"))
        self.assertEqual(len(simulator.records("contacts")), 1)

    def test_unsupported_kinds_are_rejected(self) -> None:
        simulator = DeterministicErpSimulator(seed_data=False)
        with self.assertRaises(ErpPermanentError):
            simulator.fetch_page("salesorders", 1)
        with self.assertRaises(ErpPermanentError):
            simulator.push_record("items", {}, "key-3")

    def test_on_call_hook_sees_every_call(self) -> None:
        seen = []
        simulator = DeterministicErpSimulator(item_count=1, on_call=lambda *args: seen.append(args[:4]))
        simulator.fail_next("items", transient(), operation="fetch")

        with self.assertRaises(ErpTransientError):
            simulator.fetch_page("items", 1)
        simulator.fetch_page("items", 1)

        self.assertEqual(seen, [("items", "GET", 500, False), ("items", "GET", 200, True)])
        self.assertTrue(simulator.test_connection()["ok"])


if __name__ == "__main__":
    unittest.main()
