from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

from flask import current_app, has_app_context

from app.contexts.erp.domain.contracts import ErpPage, ExternalRecord, normalize_modified_at
from app.contexts.erp.domain.gateway import (
    SUPPORTED_KINDS,
    ErpGateway,
    ErpGatewayError,
    ErpRateLimitedError,
    ErpTransientError,
    ErpValidationError,
)
from app.contexts.erp.infrastructure.mappers import map_contact, map_item
from app.contexts.sync import repositories, runs
from app.contexts.sync.sales import aggregate_invoice, has_line_items, is_void_invoice
from app.db import DATABASE_ERRORS
from app.errors import SyncInProgressError, ValidationError
from app.observability import observe_sync_run


ID_FIELDS = {"items": "item_id", "contacts": "contact_id", "invoices": "invoice_id"}
DELETE_ACTIONS = {"delete", "deleted", "void"}

_logger = logging.getLogger("app")


class SyncRunTimeout(RuntimeError):
    pass


@dataclass
class SyncRunResult:
    sync_run_id: int
    kind: str
    status: str = runs.SYNC_STATUS_RUNNING
    sync_mode: str = "incremental"
    triggered_by: str = "manual"
    since: str | None = None
    records_in: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    delisted: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    error_class: str | None = None
    error_summary: str | None = None
    duration_ms: int = 0

    def counts(self) -> Dict[str, int]:
        return {
            "records_in": self.records_in,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "delisted": self.delisted,
            "errors": self.errors,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_run_id": self.sync_run_id,
            "kind": self.kind,
            "status": self.status,
            "sync_mode": self.sync_mode,
            "triggered_by": self.triggered_by,
            "since": self.since,
            **self.counts(),
            "error_messages": list(self.error_messages),
            "error_class": self.error_class,
            "error_summary": self.error_summary,
            "duration_ms": self.duration_ms,
        }


def _config_int(key: str, default: int, minimum: int, maximum: int) -> int:
    if not has_app_context():
        return default
    try:
        value = int(current_app.config.get(key, default) or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, min(maximum, value))


def normalize_kind(kind: str) -> str:
    normalized = str(kind or "").strip().lower()
    if normalized == "customers":
        normalized = "contacts"
    if normalized not in SUPPORTED_KINDS:
        raise ValidationError(
            code="kind_not_supported",
            message_key="kind_not_supported",
            details=f"unsupported sync kind: {kind}",
        )
    return normalized


def _normalize_since(since) -> str | None:
    if since is None or since == "":
        return None
    if isinstance(since, datetime):
        since = since.isoformat()
    normalized = normalize_modified_at(since)
    if normalized is None:
        raise ValidationError(code="since_invalid", message_key="since_invalid", details=f"invalid since timestamp: {since}")
    return normalized


class ReconciliationEngine:
    """Pulls ERP state page by page and merges it into local storage."""

    def __init__(
        self,
        db,
        gateway: ErpGateway,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        max_seconds: int | None = None,
        page_max_retries: int | None = None,
        error_limit: int | None = None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self._sleep = sleep
        self._clock = clock
        self.max_seconds = int(max_seconds or _config_int("SYNC_RUN_MAX_SECONDS", 900, 1, 86400))
        self.page_max_retries = int(
            page_max_retries if page_max_retries is not None else _config_int("SYNC_PAGE_MAX_RETRIES", 3, 0, 10)
        )
        self.error_limit = int(error_limit or _config_int("SYNC_ERROR_MESSAGES_LIMIT", 100, 1, 1000))

    # Full and incremental runs.

    def reconcile(self, kind: str, since=None, *, triggered_by: str = "manual") -> SyncRunResult:
        kind = normalize_kind(kind)
        since_iso = _normalize_since(since)
        sync_mode = "incremental" if since_iso else "full"

        expired = runs.expire_stale_runs(self.db, kind, self.max_seconds)
        if expired:
            _logger.warning("sync_run_expired", extra={"kind": kind, "expired_runs": expired})
        if runs.running_run(self.db, kind) is not None:
            self.db.commit()
            raise SyncInProgressError(details=f"a {kind} sync is already running")

        sync_run_id = runs.start_run(
            self.db, kind, sync_mode=sync_mode, triggered_by=triggered_by, since=since_iso
        )
        self.db.commit()

        result = SyncRunResult(
            sync_run_id=sync_run_id,
            kind=kind,
            sync_mode=sync_mode,
            triggered_by=triggered_by,
            since=since_iso,
        )
        started = self._clock()
        _logger.info(
            "sync_run_started",
            extra={"sync_run_id": sync_run_id, "kind": kind, "sync_mode": sync_mode, "triggered_by": triggered_by},
        )

        try:
            seen = self._run_pages(kind, since_iso, result, started)
            if kind == "items" and sync_mode == "full":
                swept = repositories.sweep_unseen_products(self.db, seen)
                result.updated += swept
                result.delisted += swept
                self.db.commit()
            result.status = runs.SYNC_STATUS_COMPLETED
        except SyncRunTimeout:
            self.db.rollback()
            result.status = runs.SYNC_STATUS_FAILED
            result.error_class = SyncRunTimeout.__name__
            result.error_summary = "timeout"
        except ErpGatewayError as exc:
            self.db.rollback()
            result.status = runs.SYNC_STATUS_FAILED
            result.error_class = type(exc).__name__
            result.error_summary = str(exc)
        except Exception as exc:
            self.db.rollback()
            result.status = runs.SYNC_STATUS_FAILED
            result.error_class = type(exc).__name__
            result.error_summary = str(exc)
            self._finish(result, started)
            _logger.exception("sync_run_crashed", extra={"sync_run_id": sync_run_id, "kind": kind})
            raise

        self._finish(result, started)
        log = _logger.info if result.status == runs.SYNC_STATUS_COMPLETED else _logger.error
        log(
            "sync_run_finished",
            extra={
                "sync_run_id": result.sync_run_id,
                "kind": kind,
                "status": result.status,
                "records_in": result.records_in,
                "records_created": result.created,
                "records_updated": result.updated,
                "records_skipped": result.skipped,
                "records_delisted": result.delisted,
                "record_errors": result.errors,
                "error_class": result.error_class,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    def _finish(self, result: SyncRunResult, started: float) -> None:
        result.duration_ms = int(max(0.0, self._clock() - started) * 1000)
        runs.finish_run(
            self.db,
            result.sync_run_id,
            status=result.status,
            counts=result.counts(),
            error_messages=result.error_messages,
            error_summary=result.error_summary,
            duration_ms=result.duration_ms,
        )
        self.db.commit()
        observe_sync_run(result.kind, result.status, result.duration_ms / 1000.0, result.counts())

    def _check_budget(self, started: float) -> None:
        if self._clock() - started > self.max_seconds:
            raise SyncRunTimeout(f"run exceeded {self.max_seconds}s")

    def _run_pages(self, kind: str, since: str | None, result: SyncRunResult, started: float) -> set[str]:
        seen: set[str] = set()
        page_number = 1
        while True:
            self._check_budget(started)
            page = self._fetch_page(kind, page_number, since, started)
            for record in page.records:
                if record.external_id:
                    seen.add(record.external_id)
                self._apply_record(kind, record, since, result)
            self.db.commit()
            if not page.has_more:
                return seen
            page_number += 1

    def _fetch_page(self, kind: str, page_number: int, since: str | None, started: float) -> ErpPage:
        transient_failures = 0
        while True:
            try:
                return self.gateway.fetch_page(kind, page_number, since)
            except ErpRateLimitedError as exc:
                _logger.warning(
                    "sync_page_rate_limited",
                    extra={"kind": kind, "page": page_number, "retry_after": exc.retry_after},
                )
                self._sleep(exc.retry_after)
            except ErpTransientError as exc:
                transient_failures += 1
                if transient_failures > self.page_max_retries:
                    raise
                backoff = float(2 ** transient_failures)
                _logger.warning(
                    "sync_page_retry",
                    extra={"kind": kind, "page": page_number, "attempt": transient_failures, "backoff": backoff, "error": str(exc)},
                )
                self._sleep(backoff)
            self._check_budget(started)

    def _apply_record(self, kind: str, record: ExternalRecord, since: str | None, result: SyncRunResult) -> None:
        result.records_in += 1
        if since and record.modified_at and record.modified_at < since:
            result.skipped += 1
            return
        try:
            with self.db.savepoint():
                outcome = self._merge(kind, record)
        except (ErpValidationError, *DATABASE_ERRORS) as exc:
            result.errors += 1
            if len(result.error_messages) < self.error_limit:
                result.error_messages.append(f"{kind} {record.external_id or '?'}: {exc}")
            _logger.warning(
                "sync_record_rejected",
                extra={"kind": kind, "external_id": record.external_id, "error": str(exc)},
            )
            return
        self._count(result, outcome)

    @staticmethod
    def _count(result: SyncRunResult, outcome: str) -> None:
        if outcome == repositories.MERGE_CREATED:
            result.created += 1
        elif outcome == repositories.MERGE_DELISTED:
            result.updated += 1
            result.delisted += 1
        elif outcome == repositories.MERGE_UPDATED:
            result.updated += 1
        else:
            result.skipped += 1

    def _merge(self, kind: str, record: ExternalRecord) -> str:
        if kind == "items":
            return repositories.merge_product(self.db, map_item(record))
        if kind == "contacts":
            return repositories.merge_customer(self.db, map_contact(record))
        return self._merge_invoice(record.payload)

    def _merge_invoice(self, payload: Dict[str, Any], *, removed: bool = False) -> str:
        if not removed and not is_void_invoice(payload) and not has_line_items(payload):
            # List pages carry invoice headers only.
            invoice_id = str(payload.get("invoice_id") or "").strip()
            fetched = self.gateway.fetch_record("invoices", invoice_id) if invoice_id else None
            if fetched is not None:
                payload = fetched.payload
        return aggregate_invoice(self.db, payload, removed=removed)

    # Single-record merges for webhooks.

    def reconcile_record(self, kind: str, payload: Dict[str, Any], action: str = "update") -> Dict[str, Any]:
        kind = normalize_kind(kind)
        data = dict(payload or {}) if isinstance(payload, dict) else {}
        record = ExternalRecord.from_payload(kind, data, ID_FIELDS[kind])
        if not record.external_id:
            raise ErpValidationError(f"{kind} webhook without {ID_FIELDS[kind]}")
        removed = str(action or "").strip().lower() in DELETE_ACTIONS

        with self.db.savepoint():
            if kind == "invoices":
                outcome = self._merge_invoice(data, removed=removed)
            elif removed:
                delist = repositories.delist_product if kind == "items" else repositories.delist_customer
                outcome = delist(self.db, record.external_id)
            else:
                outcome = self._merge_with_refetch(kind, record)
        self.db.commit()

        _logger.info(
            "sync_record_merged",
            extra={"kind": kind, "external_id": record.external_id, "action": action, "result": outcome},
        )
        return {"kind": kind, "external_id": record.external_id, "action": action, "result": outcome}

    def _merge_with_refetch(self, kind: str, record: ExternalRecord) -> str:
        try:
            return self._merge(kind, record)
        except ErpValidationError:
            # Notification carried only the id; read the full record.
            fetched = self.gateway.fetch_record(kind, record.external_id)
            if fetched is None:
                raise
            return self._merge(kind, fetched)

    def last_incremental_since(self, kind: str) -> str | None:
        return runs.last_completed_started_at(self.db, normalize_kind(kind))
