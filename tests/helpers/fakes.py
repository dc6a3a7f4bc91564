from __future__ import annotations

from app import create_app
from app.config import Config
from app.contexts.erp.domain.contracts import ErpPage, ExternalRecord
from app.contexts.erp.domain.gateway import ErpGateway
from app.contexts.erp.infrastructure.circuit_breaker import reset_erp_circuit_breaker_for_tests
from app.observability import reset_metrics_for_tests
from app.security import reset_rate_limiter_for_tests
from tests.helpers.temp_db import TempDbSandbox


_ID_FIELDS = {"items": "item_id", "contacts": "contact_id", "invoices": "invoice_id"}


def build_test_app(prefix: str, **config_overrides):
    reset_metrics_for_tests()
    reset_rate_limiter_for_tests()
    reset_erp_circuit_breaker_for_tests()
    temp_db = TempDbSandbox(prefix=prefix)
    attrs = {
        "TESTING": True,
        "AUTH_ENABLED": False,
        "RATE_LIMIT_ENABLED": False,
        "ERP_MODE": "simulator",
        "SYNC_TIMEZONE": "UTC",
        "WEBHOOK_PROCESS_INLINE": True,
        "WEBHOOK_SECRET": "test-webhook-secret",
        "JOB_QUEUE_BACKOFF_JITTER_RATIO": 0.0,
        "LOG_JSON": False,
    }
    attrs.update(config_overrides)
    TempConfig = temp_db.make_config(Config, **attrs)
    return temp_db, create_app(TempConfig)


def make_item(index: int, **overrides) -> dict:
    item = {
        "item_id": f"I-{index:03d}",
        "name": f"Item {index}",
        "sku": f"SKU-{index:03d}",
        "rate": 10.0 + index,
        "category_name": "Sunglasses",
        "stock_on_hand": 25,
        "reorder_level": 5,
        "status": "active",
        "show_in_storefront": True,
        "last_modified_time": "2024-05-01T10:00:00Z",
    }
    item.update(overrides)
    return item


def make_contact(index: int, email: str, **overrides) -> dict:
    contact = {
        "contact_id": f"C-{index:03d}",
        "contact_name": f"Contact {index}",
        "company_name": f"Company {index}",
        "email": email,
        "status": "active",
        "last_modified_time": "2024-05-01T10:00:00Z",
    }
    contact.update(overrides)
    return contact


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class RecordingSleep:
    """Collects sleep calls and moves the clock forward instead of blocking."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.calls: list[float] = []
        self._clock = clock

    def __call__(self, seconds: float) -> None:
        self.calls.append(float(seconds))
        if self._clock is not None:
            self._clock.advance(seconds)


class ScriptedGateway(ErpGateway):
    """Serves fixed pages per kind and raises scripted errors first."""

    def __init__(self, pages: dict | None = None) -> None:
        self.pages = {kind: [list(page) for page in kind_pages] for kind, kind_pages in (pages or {}).items()}
        self.records: dict[tuple[str, str], dict] = {}
        self.errors: list[tuple[str, str, Exception]] = []
        self.fetch_calls: list[tuple[str, int, str | None]] = []
        self.pushes: list[tuple[str, dict, str]] = []
        self.on_fetch = None

    def fail_next(self, kind: str, error: Exception, times: int = 1, operation: str = "fetch") -> None:
        for _ in range(max(1, int(times))):
            self.errors.append((kind, operation, error))

    def _raise_scripted(self, kind: str, operation: str) -> None:
        for index, (error_kind, error_operation, error) in enumerate(self.errors):
            if error_kind == kind and error_operation == operation:
                del self.errors[index]
                raise error

    def fetch_page(self, kind: str, page: int, since: str | None = None) -> ErpPage:
        self.fetch_calls.append((kind, page, since))
        if self.on_fetch is not None:
            self.on_fetch(kind, page)
        self._raise_scripted(kind, "fetch")
        kind_pages = self.pages.get(kind, [])
        chunk = kind_pages[page - 1] if page - 1 < len(kind_pages) else []
        return ErpPage(
            records=[ExternalRecord.from_payload(kind, payload, _ID_FIELDS[kind]) for payload in chunk],
            has_more=page < len(kind_pages),
            page=page,
        )

    def fetch_record(self, kind: str, external_id: str) -> ExternalRecord | None:
        self._raise_scripted(kind, "fetch_record")
        payload = self.records.get((kind, str(external_id)))
        if payload is None:
            return None
        return ExternalRecord.from_payload(kind, payload, _ID_FIELDS[kind])

    def push_record(self, kind: str, payload: dict, idempotency_key: str) -> str:
        self.pushes.append((kind, dict(payload), idempotency_key))
        self._raise_scripted(kind, "push")
        return f"EXT-{kind}-{len(self.pushes)}"

    def test_connection(self) -> dict:
        return {"ok": True, "message": "scripted"}
