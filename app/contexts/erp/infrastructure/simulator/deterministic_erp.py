from __future__ import annotations

import copy
import hashlib
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.contexts.erp.domain.contracts import ErpPage, ExternalRecord
from app.contexts.erp.domain.gateway import (
    ErpGateway,
    ErpGatewayError,
    ErpPermanentError,
    ErpTransientError,
)
from app.contexts.erp.infrastructure.mappers.catalog_mapper import STOREFRONT_REF_FIELD
from app.contexts.erp.infrastructure.mappers.zoho_payloads import (
    map_customer_to_contact,
    map_order_to_sales_order,
)


_ID_FIELDS = {
    "items": "item_id",
    "contacts": "contact_id",
    "invoices": "invoice_id",
    "salesorders": "salesorder_id",
}
_SEED_CATEGORIES = ("Sunglasses", "Phone Accessories", "Hats & Caps", "Fragrance", "Seasonal")
_BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _iso(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


class DeterministicErpSimulator(ErpGateway):
    """In-memory ERP with seeded catalog, idempotent pushes and scripted failures."""

    def __init__(
        self,
        seed: int = 42,
        *,
        item_count: int = 12,
        page_size: int = 200,
        seed_data: bool = True,
        on_call: Callable[[str, str, int, bool, float], None] | None = None,
    ) -> None:
        self.seed = int(seed)
        self.page_size = max(1, int(page_size))
        self._on_call = on_call
        self._lock = threading.RLock()
        self._records: dict[str, dict[str, dict]] = {kind: {} for kind in _ID_FIELDS}
        self._accepted_keys: dict[str, str] = {}
        self._failures: list[dict] = []
        self._sequence = 0
        self.calls: list[tuple[str, str]] = []
        self.push_attempts: dict[str, int] = {}
        if seed_data:
            self._seed_catalog(item_count)

    def _digest(self, value: str) -> int:
        return int(hashlib.sha256(f"{self.seed}:{value}".encode("utf-8")).hexdigest()[:8], 16)

    def _seed_catalog(self, item_count: int) -> None:
        for index in range(1, max(0, int(item_count)) + 1):
            bucket = self._digest(f"item:{index}")
            self.upsert(
                "items",
                {
                    "item_id": f"SIM-{index:04d}",
                    "name": f"Simulated item {index}",
                    "sku": f"SKU-{index:04d}",
                    "rate": round(1 + (bucket % 5000) / 100.0, 2),
                    "category_name": _SEED_CATEGORIES[bucket % len(_SEED_CATEGORIES)],
                    "stock_on_hand": bucket % 300,
                    "reorder_level": 10,
                    "status": "active",
                    "show_in_storefront": bucket % 10 != 0,
                    "last_modified_time": _iso(_BASE_TIME + timedelta(minutes=index)),
                },
            )

    # Test and development controls.

    def upsert(self, kind: str, payload: dict) -> dict:
        id_field = _ID_FIELDS[kind]
        with self._lock:
            record = copy.deepcopy(dict(payload))
            if not record.get(id_field):
                self._sequence += 1
                record[id_field] = f"SIM-{kind[:2].upper()}-{self._sequence:06d}"
            record.setdefault("last_modified_time", _iso(datetime.now(timezone.utc)))
            self._records[kind][str(record[id_field])] = record
            return copy.deepcopy(record)

    def remove(self, kind: str, external_id: str) -> None:
        with self._lock:
            self._records[kind].pop(str(external_id), None)

    def records(self, kind: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(record) for record in self._records[kind].values()]

    def fail_next(
        self,
        kind: str,
        error: ErpGatewayError,
        times: int = 1,
        *,
        operation: str | None = None,
        key: str | None = None,
        after_commit: bool = False,
    ) -> None:
        """Script failures for the next matching calls.

        ``after_commit`` applies the push remotely and then raises, as a lost response would.
        """
        with self._lock:
            self._failures.append(
                {
                    "kind": kind,
                    "operation": operation,
                    "key": key,
                    "error": error,
                    "remaining": max(1, int(times)),
                    "after_commit": bool(after_commit),
                }
            )

    def _take_failure(self, kind: str, operation: str, key: str | None = None) -> dict | None:
        for failure in self._failures:
            if failure["kind"] != kind:
                continue
            if failure["operation"] not in (None, operation):
                continue
            if failure["key"] is not None and failure["key"] != key:
                continue
            failure["remaining"] -= 1
            if failure["remaining"] <= 0:
                self._failures.remove(failure)
            return failure
        return None

    def _record_call(self, kind: str, method: str, success: bool) -> None:
        self.calls.append((kind, method))
        if self._on_call is not None:
            self._on_call(kind, method, 200 if success else 500, success, 0.0)

    # ErpGateway

    def fetch_page(self, kind: str, page: int, since: str | None = None) -> ErpPage:
        with self._lock:
            if kind not in ("items", "contacts", "invoices"):
                raise ErpPermanentError(f"unsupported ERP kind: {kind}", code="kind_not_supported")
            failure = self._take_failure(kind, "fetch")
            if failure is not None:
                self._record_call(kind, "GET", False)
                raise failure["error"]
            id_field = _ID_FIELDS[kind]
            ordered = sorted(
                self._records[kind].values(),
                key=lambda record: (str(record.get("last_modified_time") or ""), str(record.get(id_field))),
                reverse=True,
            )
            page = max(1, int(page))
            start = (page - 1) * self.page_size
            chunk = ordered[start : start + self.page_size]
            self._record_call(kind, "GET", True)
            return ErpPage(
                records=[ExternalRecord.from_payload(kind, copy.deepcopy(item), id_field) for item in chunk],
                has_more=start + self.page_size < len(ordered),
                page=page,
            )

    def fetch_record(self, kind: str, external_id: str) -> ExternalRecord | None:
        with self._lock:
            failure = self._take_failure(kind, "fetch")
            if failure is not None:
                self._record_call(kind, "GET", False)
                raise failure["error"]
            self._record_call(kind, "GET", True)
            record = self._records.get(kind, {}).get(str(external_id))
            if record is None:
                return None
            return ExternalRecord.from_payload(kind, copy.deepcopy(record), _ID_FIELDS[kind])

    def push_record(self, kind: str, payload: dict, idempotency_key: str) -> str:
        key = str(idempotency_key or "").strip()
        with self._lock:
            self.push_attempts[key] = self.push_attempts.get(key, 0) + 1
            if kind == "contacts":
                erp_payload = map_customer_to_contact(payload, key)
            elif kind == "salesorders":
                erp_payload = map_order_to_sales_order(payload, key)
            else:
                raise ErpPermanentError(f"push not supported for {kind}", code="kind_not_supported")

            existing = self._accepted_keys.get(key)
            if existing:
                self._record_call(kind, "GET", True)
                return existing

            failure = self._take_failure(kind, "push", key)
            if failure is not None and not failure["after_commit"]:
                self._record_call(kind, "POST", False)
                raise failure["error"]

            if kind == "contacts":
                person = (erp_payload.get("contact_persons") or [{}])[0]
                erp_payload["email"] = person.get("email")
                erp_payload[STOREFRONT_REF_FIELD] = key
            created = self.upsert(kind, erp_payload)
            external_id = str(created[_ID_FIELDS[kind]])
            self._accepted_keys[key] = external_id
            self._record_call(kind, "POST", failure is None)
            if failure is not None:
                raise failure["error"]
            return external_id

    def accepted_key(self, key: str) -> str | None:
        with self._lock:
            return self._accepted_keys.get(key)

    def test_connection(self) -> dict:
        try:
            page = self.fetch_page("items", 1)
        except ErpGatewayError as exc:
            return {"ok": False, "message": str(exc)}
        return {"ok": True, "message": f"Simulator connected. {len(page.records)} items on the first page."}


def transient(message: str = "simulated timeout") -> ErpTransientError:
    return ErpTransientError(message, code="simulated")
