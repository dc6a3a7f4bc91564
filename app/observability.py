from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict

from flask import current_app, g, has_request_context, request


_HTTP_DURATION_BUCKETS_MS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)
_ERP_CALL_BUCKETS_MS = (25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_JOB_PROCESSING_BUCKETS_MS = (10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0, 30000.0)
_JOB_BACKOFF_BUCKETS_SECONDS = (1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)
_SYNC_RUN_BUCKETS_SECONDS = (0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

_LOG_REQUEST_ID_CTX: contextvars.ContextVar[str] = contextvars.ContextVar("log_request_id", default="")


def _normalize_request_id(value: str | None) -> str:
    return str(value or "").strip() or "n/a"


def set_log_request_id(request_id: str | None) -> None:
    _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))


@contextlib.contextmanager
def bind_request_id(request_id: str | None):
    token = _LOG_REQUEST_ID_CTX.set(_normalize_request_id(request_id))
    try:
        yield _LOG_REQUEST_ID_CTX.get()
    finally:
        _LOG_REQUEST_ID_CTX.reset(token)


def new_background_request_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _background_request_id(default: str | None = None) -> str:
    request_id = str(_LOG_REQUEST_ID_CTX.get() or "").strip()
    if request_id:
        return request_id
    return default or "n/a"


class JsonLogFormatter(logging.Formatter):
    _base_keys = {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    }

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if has_request_context():
            payload["request_id"] = current_request_id(default="n/a")
            payload["path"] = request.path
            payload["method"] = request.method
            if request.url_rule is not None:
                payload["route"] = request.url_rule.rule
        else:
            record_request_id = str(getattr(record, "request_id", "") or "").strip()
            payload["request_id"] = record_request_id or _background_request_id(default="n/a")

        for key, value in record.__dict__.items():
            if key in self._base_keys or key.startswith("_"):
                continue
            if key in payload:
                continue
            if callable(value):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def configure_json_logging(app) -> None:
    if not bool(app.config.get("LOG_JSON", True)):
        return
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).strip().upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    app.logger.handlers = []
    app.logger.propagate = True


def ensure_request_id() -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if request_id:
        set_log_request_id(request_id)
        return request_id
    incoming = str(request.headers.get("X-Request-Id") or "").strip()
    request_id = incoming or str(uuid.uuid4())
    g.request_id = request_id
    set_log_request_id(request_id)
    return request_id


def current_request_id(default: str | None = None) -> str:
    if has_request_context():
        request_id = str(getattr(g, "request_id", "") or "").strip()
        if request_id:
            return request_id
    return _background_request_id(default=default)


def _label(value: object, default: str = "unknown") -> str:
    return str(value or default).strip() or default


class MetricsRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._requests_total = 0
        self._errors_total = 0
        self._by_route: Dict[str, Dict[str, float]] = {}
        self._http_request_total: Dict[tuple[str, str, str], int] = {}
        self._http_request_duration_ms: Dict[tuple[str, str], dict] = {}

        self._erp_api_calls_total: Dict[tuple[str, str, str], int] = {}
        self._erp_api_call_duration_ms = self._new_histogram_state(_ERP_CALL_BUCKETS_MS)

        self._sync_runs_total: Dict[tuple[str, str], int] = {}
        self._sync_records_total: Dict[tuple[str, str], int] = {}
        self._sync_run_duration_seconds = self._new_histogram_state(_SYNC_RUN_BUCKETS_SECONDS)

        self._job_retry_total = 0
        self._job_dead_letter_total = 0
        self._job_deferred_total = 0
        self._job_processing_time = self._new_histogram_state(_JOB_PROCESSING_BUCKETS_MS)
        self._job_retry_backoff_seconds = self._new_histogram_state(_JOB_BACKOFF_BUCKETS_SECONDS)

        self._webhook_events_total: Dict[tuple[str, str], int] = {}

    @staticmethod
    def _bucket_label(limit: float) -> str:
        return f"{limit:g}"

    @classmethod
    def _new_histogram_state(cls, limits: tuple[float, ...]) -> dict:
        return {
            "count": 0,
            "sum": 0.0,
            "buckets": {cls._bucket_label(limit): 0 for limit in limits} | {"+Inf": 0},
        }

    @classmethod
    def _observe_histogram(cls, state: dict, value: float, limits: tuple[float, ...]) -> None:
        duration = max(0.0, float(value))
        state["count"] += 1
        state["sum"] += duration
        for limit in limits:
            if duration <= limit:
                key = cls._bucket_label(limit)
                state["buckets"][key] = int(state["buckets"].get(key, 0)) + 1
        state["buckets"]["+Inf"] = int(state["count"])

    @staticmethod
    def _copy_histogram(state: dict) -> dict:
        return {
            "count": int(state["count"]),
            "sum": float(state["sum"]),
            "buckets": {label: int(count) for label, count in state["buckets"].items()},
        }

    def observe_http(self, method: str, route: str, status_code: int, duration_ms: float) -> None:
        method_key = str(method or "GET").strip().upper() or "GET"
        route_key = _label(route)
        status_key = str(int(status_code))

        key = f"{method_key} {route_key}"
        with self._lock:
            bucket = self._by_route.setdefault(
                key,
                {
                    "requests": 0.0,
                    "errors": 0.0,
                    "latency_sum_ms": 0.0,
                    "latency_max_ms": 0.0,
                },
            )
            bucket["requests"] += 1
            bucket["latency_sum_ms"] += max(0.0, float(duration_ms))
            bucket["latency_max_ms"] = max(bucket["latency_max_ms"], max(0.0, float(duration_ms)))
            self._requests_total += 1
            if int(status_code) >= 400:
                bucket["errors"] += 1
                self._errors_total += 1

            total_key = (method_key, route_key, status_key)
            self._http_request_total[total_key] = int(self._http_request_total.get(total_key, 0)) + 1
            histogram = self._http_request_duration_ms.setdefault(
                (method_key, route_key),
                self._new_histogram_state(_HTTP_DURATION_BUCKETS_MS),
            )
            self._observe_histogram(histogram, duration_ms, _HTTP_DURATION_BUCKETS_MS)

    def observe_erp_api_call(self, kind: str, method: str, outcome: str, duration_ms: float) -> None:
        key = (_label(kind), str(method or "GET").strip().upper() or "GET", _label(outcome))
        with self._lock:
            self._erp_api_calls_total[key] = int(self._erp_api_calls_total.get(key, 0)) + 1
            self._observe_histogram(self._erp_api_call_duration_ms, duration_ms, _ERP_CALL_BUCKETS_MS)

    def observe_sync_run(self, kind: str, status: str, duration_seconds: float, counts: Dict[str, int]) -> None:
        kind_key = _label(kind)
        with self._lock:
            run_key = (kind_key, _label(status))
            self._sync_runs_total[run_key] = int(self._sync_runs_total.get(run_key, 0)) + 1
            for outcome in ("created", "updated", "skipped", "delisted", "errors"):
                increment = max(0, int(counts.get(outcome) or 0))
                if increment <= 0:
                    continue
                record_key = (kind_key, outcome)
                self._sync_records_total[record_key] = int(self._sync_records_total.get(record_key, 0)) + increment
            self._observe_histogram(self._sync_run_duration_seconds, duration_seconds, _SYNC_RUN_BUCKETS_SECONDS)

    def observe_job_retry(self, backoff_seconds: float) -> None:
        with self._lock:
            self._job_retry_total += 1
            self._observe_histogram(self._job_retry_backoff_seconds, backoff_seconds, _JOB_BACKOFF_BUCKETS_SECONDS)

    def observe_job_dead_letter(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._job_dead_letter_total += increment

    def observe_job_deferred(self, count: int = 1) -> None:
        increment = max(0, int(count or 0))
        if increment <= 0:
            return
        with self._lock:
            self._job_deferred_total += increment

    def observe_job_processing(self, duration_ms: float) -> None:
        with self._lock:
            self._observe_histogram(self._job_processing_time, duration_ms, _JOB_PROCESSING_BUCKETS_MS)

    def observe_webhook_event(self, subsystem: str, result: str) -> None:
        key = (_label(subsystem), _label(result))
        with self._lock:
            self._webhook_events_total[key] = int(self._webhook_events_total.get(key, 0)) + 1

    def snapshot(self) -> dict:
        with self._lock:
            route_stats = []
            for route, bucket in self._by_route.items():
                requests_count = int(bucket["requests"])
                avg_ms = 0.0
                if requests_count > 0:
                    avg_ms = float(bucket["latency_sum_ms"]) / requests_count
                route_stats.append(
                    {
                        "route": route,
                        "requests": requests_count,
                        "errors": int(bucket["errors"]),
                        "avg_latency_ms": round(avg_ms, 2),
                        "max_latency_ms": round(float(bucket["latency_max_ms"]), 2),
                    }
                )
            route_stats.sort(key=lambda item: item["requests"], reverse=True)
            return {
                "requests_total": int(self._requests_total),
                "errors_total": int(self._errors_total),
                "by_route": route_stats[:40],
                "job_queue": {
                    "retry_total": int(self._job_retry_total),
                    "dead_letter_total": int(self._job_dead_letter_total),
                    "deferred_total": int(self._job_deferred_total),
                    "processing_count": int(self._job_processing_time["count"]),
                },
                "erp_api_calls_total": int(sum(self._erp_api_calls_total.values())),
                "sync_runs_total": int(sum(self._sync_runs_total.values())),
            }

    def prometheus_snapshot(self) -> dict:
        with self._lock:
            return {
                "http_request_total": [
                    {"method": method, "route": route, "status": status, "value": int(value)}
                    for (method, route, status), value in sorted(self._http_request_total.items())
                ],
                "http_request_duration_ms": [
                    {"method": method, "route": route} | self._copy_histogram(histogram)
                    for (method, route), histogram in sorted(self._http_request_duration_ms.items())
                ],
                "erp_api_calls_total": dict(sorted(self._erp_api_calls_total.items())),
                "erp_api_call_duration_ms": self._copy_histogram(self._erp_api_call_duration_ms),
                "sync_runs_total": dict(sorted(self._sync_runs_total.items())),
                "sync_records_total": dict(sorted(self._sync_records_total.items())),
                "sync_run_duration_seconds": self._copy_histogram(self._sync_run_duration_seconds),
                "job_retry_total": int(self._job_retry_total),
                "job_dead_letter_total": int(self._job_dead_letter_total),
                "job_deferred_total": int(self._job_deferred_total),
                "job_processing_time_ms": self._copy_histogram(self._job_processing_time),
                "job_retry_backoff_seconds": self._copy_histogram(self._job_retry_backoff_seconds),
                "webhook_events_total": dict(sorted(self._webhook_events_total.items())),
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_state()


_METRICS = MetricsRegistry()


def mark_request_start() -> None:
    g._request_started_at = time.perf_counter()


def observe_response(response):
    started = float(getattr(g, "_request_started_at", 0.0) or 0.0)
    elapsed_ms = 0.0
    if started > 0.0:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
    route = request.url_rule.rule if request.url_rule is not None else request.path
    _METRICS.observe_http(request.method, route, int(response.status_code), elapsed_ms)
    response.headers["X-Response-Time-Ms"] = f"{elapsed_ms:.2f}"
    return response


def metrics_snapshot() -> dict:
    return _METRICS.snapshot()


def observe_erp_api_call(kind: str, method: str, outcome: str, duration_ms: float) -> None:
    _METRICS.observe_erp_api_call(kind, method, outcome, duration_ms)


def observe_sync_run(kind: str, status: str, duration_seconds: float, counts: Dict[str, int]) -> None:
    _METRICS.observe_sync_run(kind, status, duration_seconds, counts)


def observe_job_retry(backoff_seconds: float) -> None:
    _METRICS.observe_job_retry(backoff_seconds)


def observe_job_dead_letter(count: int = 1) -> None:
    _METRICS.observe_job_dead_letter(count)


def observe_job_deferred(count: int = 1) -> None:
    _METRICS.observe_job_deferred(count)


def observe_job_processing(duration_ms: float) -> None:
    _METRICS.observe_job_processing(duration_ms)


def observe_webhook_event(subsystem: str, result: str) -> None:
    _METRICS.observe_webhook_event(subsystem, result)


def _prom_label(value: object) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _prom_line(name: str, value: int | float, labels: dict[str, object] | None = None) -> str:
    if labels:
        labels_blob = ",".join(f'{key}="{_prom_label(val)}"' for key, val in sorted(labels.items()))
        return f"{name}{{{labels_blob}}} {value}"
    return f"{name} {value}"


def _prom_histogram(lines: list[str], name: str, hist: dict, labels: dict[str, object] | None = None) -> None:
    base_labels = dict(labels or {})
    for le_label, bucket_value in hist["buckets"].items():
        lines.append(_prom_line(f"{name}_bucket", int(bucket_value), labels=base_labels | {"le": le_label}))
    lines.append(_prom_line(f"{name}_sum", float(hist["sum"]), labels=base_labels or None))
    lines.append(_prom_line(f"{name}_count", int(hist["count"]), labels=base_labels or None))


def prometheus_metrics_text(*, queue_state: dict | None = None, circuit_state: str | None = None) -> str:
    snapshot = _METRICS.prometheus_snapshot()
    lines: list[str] = []

    lines.append("# HELP http_request_total Total HTTP requests by method, route and status.")
    lines.append("# TYPE http_request_total counter")
    for sample in snapshot["http_request_total"]:
        lines.append(
            _prom_line(
                "http_request_total",
                int(sample["value"]),
                labels={"method": sample["method"], "route": sample["route"], "status": sample["status"]},
            )
        )

    lines.append("# HELP http_request_duration_ms HTTP request duration in milliseconds.")
    lines.append("# TYPE http_request_duration_ms histogram")
    for hist in snapshot["http_request_duration_ms"]:
        _prom_histogram(lines, "http_request_duration_ms", hist, {"method": hist["method"], "route": hist["route"]})

    lines.append("# HELP erp_api_calls_total ERP API calls by kind, method and outcome.")
    lines.append("# TYPE erp_api_calls_total counter")
    for (kind, method, outcome), total in snapshot["erp_api_calls_total"].items():
        lines.append(
            _prom_line("erp_api_calls_total", int(total), labels={"kind": kind, "method": method, "outcome": outcome})
        )

    lines.append("# HELP erp_api_call_duration_ms ERP API call duration in milliseconds.")
    lines.append("# TYPE erp_api_call_duration_ms histogram")
    _prom_histogram(lines, "erp_api_call_duration_ms", snapshot["erp_api_call_duration_ms"])

    lines.append("# HELP sync_runs_total Reconciliation runs by kind and final status.")
    lines.append("# TYPE sync_runs_total counter")
    for (kind, status), total in snapshot["sync_runs_total"].items():
        lines.append(_prom_line("sync_runs_total", int(total), labels={"kind": kind, "status": status}))

    lines.append("# HELP sync_records_total Reconciled records by kind and outcome.")
    lines.append("# TYPE sync_records_total counter")
    for (kind, outcome), total in snapshot["sync_records_total"].items():
        lines.append(_prom_line("sync_records_total", int(total), labels={"kind": kind, "outcome": outcome}))

    lines.append("# HELP sync_run_duration_seconds Reconciliation run duration in seconds.")
    lines.append("# TYPE sync_run_duration_seconds histogram")
    _prom_histogram(lines, "sync_run_duration_seconds", snapshot["sync_run_duration_seconds"])

    queue = ((queue_state or {}).get("queue") or {}) if isinstance(queue_state, dict) else {}
    lines.append("# HELP job_queue_size Job queue size by state.")
    lines.append("# TYPE job_queue_size gauge")
    for state in ("pending", "processing", "failed", "completed"):
        lines.append(_prom_line("job_queue_size", int(queue.get(f"{state}_jobs") or 0), labels={"state": state}))

    lines.append("# HELP job_queue_retry_total Total job retries scheduled.")
    lines.append("# TYPE job_queue_retry_total counter")
    lines.append(_prom_line("job_queue_retry_total", int(snapshot["job_retry_total"])))

    lines.append("# HELP job_queue_dead_letter_total Total jobs moved to terminal failure.")
    lines.append("# TYPE job_queue_dead_letter_total counter")
    lines.append(_prom_line("job_queue_dead_letter_total", int(snapshot["job_dead_letter_total"])))

    lines.append("# HELP job_queue_deferred_total Total jobs deferred without consuming an attempt.")
    lines.append("# TYPE job_queue_deferred_total counter")
    lines.append(_prom_line("job_queue_deferred_total", int(snapshot["job_deferred_total"])))

    lines.append("# HELP job_processing_time_ms Job processing time in milliseconds.")
    lines.append("# TYPE job_processing_time_ms histogram")
    _prom_histogram(lines, "job_processing_time_ms", snapshot["job_processing_time_ms"])

    lines.append("# HELP job_retry_backoff_seconds Job retry backoff delay in seconds.")
    lines.append("# TYPE job_retry_backoff_seconds histogram")
    _prom_histogram(lines, "job_retry_backoff_seconds", snapshot["job_retry_backoff_seconds"])

    lines.append("# HELP webhook_events_total Inbound ERP webhooks by subsystem and result.")
    lines.append("# TYPE webhook_events_total counter")
    for (subsystem, result), total in snapshot["webhook_events_total"].items():
        lines.append(_prom_line("webhook_events_total", int(total), labels={"subsystem": subsystem, "result": result}))

    lines.append("# HELP erp_circuit_state ERP circuit breaker state (1 active, 0 inactive).")
    lines.append("# TYPE erp_circuit_state gauge")
    active_state = str(circuit_state or "closed").strip().lower() or "closed"
    for state_key in ("closed", "open", "half_open"):
        lines.append(_prom_line("erp_circuit_state", 1 if active_state == state_key else 0, labels={"state": state_key}))

    return "\n".join(lines) + "\n"


def reset_metrics_for_tests() -> None:
    _METRICS.reset()
    set_log_request_id(None)


def _parse_timestamp(value) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _queue_critical_thresholds() -> tuple[int, int]:
    age_seconds = 900
    pending_jobs = 50
    try:
        age_seconds = int(current_app.config.get("JOB_QUEUE_CRITICAL_AGE_SECONDS", age_seconds) or age_seconds)
        pending_jobs = int(current_app.config.get("JOB_QUEUE_CRITICAL_PENDING_JOBS", pending_jobs) or pending_jobs)
    except RuntimeError:
        pass
    return max(1, age_seconds), max(1, pending_jobs)


def job_queue_health(db) -> dict:
    counters = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
    for row in db.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status").fetchall():
        status = str(row["status"] or "").strip().lower()
        if status in counters:
            counters[status] = int(row["total"] or 0)

    oldest = db.execute(
        "SELECT MIN(created_at) AS oldest FROM jobs WHERE status = 'pending'"
    ).fetchone()
    last_attempt = db.execute("SELECT MAX(last_attempt_at) AS last_attempt FROM jobs").fetchone()

    now = datetime.now(timezone.utc)
    oldest_pending = _parse_timestamp(oldest["oldest"] if oldest else None)
    last_attempt_at = _parse_timestamp(last_attempt["last_attempt"] if last_attempt else None)
    oldest_age = int((now - oldest_pending).total_seconds()) if oldest_pending else 0

    worker_state = "idle"
    if counters["processing"] > 0:
        worker_state = "running"
    elif counters["pending"] > 0:
        if last_attempt_at is None:
            worker_state = "stalled"
        else:
            worker_state = "stalled" if (now - last_attempt_at).total_seconds() > 300 else "draining"

    critical_age_seconds, critical_pending_jobs = _queue_critical_thresholds()
    backlog_critical = counters["pending"] >= critical_pending_jobs or oldest_age >= critical_age_seconds

    return {
        "worker_status": worker_state,
        "worker_active": worker_state in {"running", "draining"},
        "backlog_critical": backlog_critical,
        "queue": {
            "pending_jobs": counters["pending"],
            "processing_jobs": counters["processing"],
            "failed_jobs": counters["failed"],
            "completed_jobs": counters["completed"],
            "oldest_pending_age_seconds": oldest_age,
            "last_attempt_at": last_attempt_at.isoformat().replace("+00:00", "Z") if last_attempt_at else None,
        },
    }
