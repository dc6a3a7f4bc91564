from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Mapping

from flask import Flask

from app.contexts.erp.domain.gateway import ErpGatewayError
from app.contexts.erp.interfaces.workers.runtime import get_gateway
from app.contexts.sync.engine import ReconciliationEngine
from app.contexts.webhooks.event_log import get_event_logs
from app.db import DATABASE_ERRORS, get_db
from app.errors import PermissionError, ValidationError
from app.observability import bind_request_id, new_background_request_id, observe_webhook_event
from app.security import verify_shared_secret
from app.ui_strings import success_message


SIGNATURE_HEADER = "X-Webhook-Signature"
SECRET_HEADER = "X-Webhook-Secret"

# Path segment -> reconciliation kind.
SUBSYSTEM_KINDS = {
    "items": "items",
    "customers": "contacts",
    "contacts": "contacts",
    "invoices": "invoices",
}
_ENVELOPE_KEYS = ("item", "contact", "customer", "invoice", "data")


def _unwrap(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    for key in _ENVELOPE_KEYS:
        inner = payload.get(key)
        if isinstance(inner, dict):
            return dict(inner)
    return dict(payload)


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value


class WebhookIngestor:
    """Authenticates ERP notifications and hands them to the reconciliation engine."""

    def __init__(self, app: Flask) -> None:
        self.app = app
        self.webhook_log, _call_log = get_event_logs(app)
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    @property
    def inline(self) -> bool:
        return bool(self.app.config.get("WEBHOOK_PROCESS_INLINE", False))

    def _authenticate(self, subsystem: str, action: str, headers, body: bytes) -> None:
        secret = str(self.app.config.get("WEBHOOK_SECRET") or "").strip()
        if not secret and self.app.config.get("WEBHOOK_ALLOW_UNSIGNED", False):
            self.app.logger.warning("webhook_unsigned_accepted", extra={"subsystem": subsystem, "action": action})
            return

        verdict = verify_shared_secret(
            secret,
            body=body,
            signature=_header(headers, SIGNATURE_HEADER),
            presented_secret=_header(headers, SECRET_HEADER),
        )
        if verdict == "ok":
            return
        self._reject(subsystem, action, f"signature_{verdict}")
        if verdict == "missing":
            raise PermissionError(
                code="webhook_signature_missing",
                message_key="webhook_signature_missing",
                http_status=401,
            )
        raise PermissionError(code="webhook_signature_invalid", message_key="webhook_signature_invalid")

    def _reject(self, subsystem: str, action: str, detail: str) -> None:
        self.webhook_log.record(subsystem, action, False, detail)
        observe_webhook_event(subsystem, "rejected")
        self.app.logger.warning("webhook_rejected", extra={"subsystem": subsystem, "action": action, "reason": detail})

    def handle(
        self,
        subsystem: str,
        action: str | None,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
        body: bytes = b"",
    ) -> Dict[str, Any]:
        subsystem = str(subsystem or "").strip().lower()
        if not action and isinstance(payload, dict):
            action = payload.get("action")
        action = str(action or "").strip().lower() or "update"
        self._authenticate(subsystem, action, headers, body)

        kind = SUBSYSTEM_KINDS.get(subsystem)
        if kind is None:
            self._reject(subsystem, action, "subsystem_not_supported")
            raise ValidationError(
                code="subsystem_not_supported",
                message_key="subsystem_not_supported",
                details=f"subsystem={subsystem}",
            )

        record = _unwrap(payload)
        ack: Dict[str, Any] = {
            "accepted": True,
            "subsystem": subsystem,
            "action": action,
            "message": success_message("webhook_accepted"),
        }
        if self.inline:
            outcome = self._process(subsystem, kind, action, record)
            ack.update({"queued": False, "result": outcome})
            return ack

        observe_webhook_event(subsystem, "accepted")
        self._submit(subsystem, kind, action, record)
        ack["queued"] = True
        return ack

    def _process(self, subsystem: str, kind: str, action: str, record: Dict[str, Any]) -> Dict[str, Any]:
        engine = ReconciliationEngine(get_db(), get_gateway(self.app))
        try:
            outcome = engine.reconcile_record(kind, record, action)
        except (ErpGatewayError, *DATABASE_ERRORS) as exc:
            get_db().rollback()
            self._record_failure(subsystem, action, exc)
            self.app.logger.error(
                "webhook_processing_failed",
                extra={"subsystem": subsystem, "action": action, "error": str(exc), "error_class": type(exc).__name__},
            )
            return {"result": "failed", "error": str(exc)}
        self.webhook_log.record(subsystem, action, True, f"{outcome['external_id']}: {outcome['result']}")
        observe_webhook_event(subsystem, "processed")
        return outcome

    def _record_failure(self, subsystem: str, action: str, exc: Exception) -> None:
        self.webhook_log.record(subsystem, action, False, f"{type(exc).__name__}: {exc}")
        observe_webhook_event(subsystem, "failed")

    def _process_in_background(self, subsystem: str, kind: str, action: str, record: Dict[str, Any]) -> None:
        with self.app.app_context(), bind_request_id(new_background_request_id("webhook")):
            try:
                self._process(subsystem, kind, action, record)
            except Exception as exc:  # noqa: BLE001
                get_db().rollback()
                self._record_failure(subsystem, action, exc)
                self.app.logger.exception(
                    "webhook_background_failed",
                    extra={"subsystem": subsystem, "action": action, "error_class": type(exc).__name__},
                )

    def _submit(self, subsystem: str, kind: str, action: str, record: Dict[str, Any]) -> Future:
        with self._executor_lock:
            if self._executor is None:
                workers = max(1, min(32, int(self.app.config.get("WEBHOOK_MAX_WORKERS", 4) or 4)))
                self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="webhook")
            return self._executor.submit(self._process_in_background, subsystem, kind, action, record)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


def get_webhook_ingestor(app: Flask) -> WebhookIngestor:
    ingestor = app.extensions.get("webhook_ingestor")
    if ingestor is None:
        ingestor = WebhookIngestor(app)
        app.extensions["webhook_ingestor"] = ingestor
    return ingestor
