from __future__ import annotations

import os
import threading
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict

from flask import Flask

from app.contexts.erp.interfaces.workers.runtime import get_gateway
from app.contexts.jobs.processor import process_job_queue
from app.contexts.sync.engine import ReconciliationEngine, normalize_kind
from app.contexts.webhooks.event_log import get_event_logs, resolve_timezone
from app.db import get_db
from app.errors import AppError, SyncInProgressError, ValidationError
from app.observability import bind_request_id, new_background_request_id


SYNC_MODE_POLLING = "polling"
SYNC_MODE_WEBHOOK = "webhook"
SYNC_MODES = (SYNC_MODE_POLLING, SYNC_MODE_WEBHOOK)

TASK_ITEMS = "items"
TASK_ITEMS_WEEKLY = "items_weekly"
TASK_CONTACTS = "contacts"
TASK_JOBS = "jobs"
TASK_HOUSEKEEPING = "housekeeping"
TASKS = (TASK_ITEMS, TASK_ITEMS_WEEKLY, TASK_CONTACTS, TASK_JOBS, TASK_HOUSEKEEPING)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _int_config(app: Flask, key: str, default: int, min_value: int, max_value: int) -> int:
    try:
        value = int(app.config.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(min_value, min(value, max_value))


def _normalize_mode(value: object, default: str = SYNC_MODE_WEBHOOK) -> str:
    mode = str(value or "").strip().lower()
    return mode if mode in SYNC_MODES else default


def next_daily_run(now: datetime, hour: int, tz: tzinfo) -> datetime:
    local = now.astimezone(tz)
    candidate = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    return candidate.astimezone(timezone.utc)


def next_weekly_run(now: datetime, weekday: int, hour: int, tz: tzinfo) -> datetime:
    local = now.astimezone(tz)
    days_ahead = (weekday - local.weekday()) % 7
    candidate = (local + timedelta(days=days_ahead)).replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=7)
    return candidate.astimezone(timezone.utc)


class SyncOrchestrator:
    """Wall-clock driver for reconciliation runs and job queue drains."""

    def __init__(self, app: Flask, *, now: Callable[[], datetime] | None = None, tick_seconds: float = 30.0) -> None:
        self.app = app
        self.mode = _normalize_mode(app.config.get("SYNC_MODE"))
        self.enabled = bool(app.config.get("SYNC_SCHEDULER_ENABLED", True))
        self.tz = resolve_timezone(app.config.get("SYNC_TIMEZONE"))
        self.business_start = _int_config(app, "SYNC_BUSINESS_HOURS_START", 8, 0, 23)
        self.business_end = _int_config(app, "SYNC_BUSINESS_HOURS_END", 18, 1, 24)
        self.business_interval = _int_config(app, "SYNC_BUSINESS_HOURS_INTERVAL_MINUTES", 120, 1, 1440)
        self.off_hours_interval = _int_config(app, "SYNC_OFF_HOURS_INTERVAL_MINUTES", 360, 1, 1440)
        self.daily_hour = _int_config(app, "SYNC_DAILY_HOUR", 3, 0, 23)
        self.weekly_weekday = _int_config(app, "SYNC_WEEKLY_WEEKDAY", 6, 0, 6)
        self.weekly_hour = _int_config(app, "SYNC_WEEKLY_HOUR", 2, 0, 23)
        self.contacts_interval = _int_config(app, "CUSTOMER_SYNC_INTERVAL_MINUTES", 60, 1, 1440)
        self.drain_interval = _int_config(app, "JOB_QUEUE_DRAIN_INTERVAL_SECONDS", 60, 1, 3600)
        self.lock_timeout = _int_config(app, "SYNC_MANUAL_LOCK_TIMEOUT_SECONDS", 5, 0, 300)

        self._now = now or (lambda: datetime.now(timezone.utc))
        self._tick_seconds = max(0.01, float(tick_seconds))
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._tasks: dict[str, dict[str, Any]] = {
            name: {"last_run_at": None, "next_run_at": None, "last_result": None} for name in TASKS
        }

    # Scheduling rules.

    def current_interval_minutes(self, now: datetime | None = None) -> int:
        local = (now or self._now()).astimezone(self.tz)
        if local.weekday() < 5 and self.business_start <= local.hour < self.business_end:
            return self.business_interval
        return self.off_hours_interval

    def _schedule(self, name: str, now: datetime) -> datetime:
        if name == TASK_ITEMS:
            if self.mode == SYNC_MODE_POLLING:
                return now + timedelta(minutes=self.current_interval_minutes(now))
            return next_daily_run(now, self.daily_hour, self.tz)
        if name == TASK_ITEMS_WEEKLY:
            return next_weekly_run(now, self.weekly_weekday, self.weekly_hour, self.tz)
        if name == TASK_CONTACTS:
            return now + timedelta(minutes=self.contacts_interval)
        if name == TASK_JOBS:
            return now + timedelta(seconds=self.drain_interval)
        return now + timedelta(minutes=1)

    def _next_due(self, name: str, now: datetime) -> datetime:
        with self._state_lock:
            due = self._tasks[name]["next_run_at"]
            if due is None:
                due = self._schedule(name, now)
                self._tasks[name]["next_run_at"] = due
            return due

    # Locks.

    def _lock_for(self, kind: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(kind)
            if lock is None:
                lock = threading.Lock()
                self._locks[kind] = lock
            return lock

    def is_busy(self, kind: str) -> bool:
        return self._lock_for(normalize_kind(kind)).locked()

    # Work.

    def _run_sync(self, kind: str, *, full: bool, triggered_by: str) -> Dict[str, Any]:
        with self.app.app_context(), bind_request_id(new_background_request_id(f"sync-{kind}")):
            engine = ReconciliationEngine(get_db(), get_gateway(self.app))
            since = None if full else engine.last_incremental_since(kind)
            return engine.reconcile(kind, since, triggered_by=triggered_by).to_dict()

    def trigger(self, kind: str, *, full: bool = False, triggered_by: str = "manual") -> Dict[str, Any]:
        """Run a sync now, waiting briefly for a run of the same kind to finish."""
        kind = normalize_kind(kind)
        lock = self._lock_for(kind)
        if not lock.acquire(timeout=self.lock_timeout):
            raise SyncInProgressError(details=f"a {kind} sync is already running")
        try:
            return self._run_sync(kind, full=full, triggered_by=triggered_by)
        finally:
            lock.release()

    def _run_if_idle(self, kind: str, *, full: bool, triggered_by: str) -> Dict[str, Any]:
        lock = self._lock_for(kind)
        if not lock.acquire(blocking=False):
            self.app.logger.info("sync_skipped_busy", extra={"kind": kind, "triggered_by": triggered_by})
            return {"kind": kind, "status": "skipped", "reason": "busy"}
        try:
            return self._run_sync(kind, full=full, triggered_by=triggered_by)
        finally:
            lock.release()

    def drain_jobs(self, limit: int | None = None) -> Dict[str, int]:
        with self.app.app_context(), bind_request_id(new_background_request_id("drain")):
            return process_job_queue(get_db(), get_gateway(self.app), limit)

    def housekeeping(self, now: datetime | None = None) -> Dict[str, bool]:
        webhook_log, call_log = get_event_logs(self.app)
        current = now or self._now()
        return {"webhooks_new_day": webhook_log.roll_over(current), "erp_calls_new_day": call_log.roll_over(current)}

    def run_task(self, name: str) -> Dict[str, Any]:
        if name == TASK_ITEMS:
            triggered_by = "scheduler" if self.mode == SYNC_MODE_POLLING else "scheduler-daily"
            return self._run_if_idle("items", full=False, triggered_by=triggered_by)
        if name == TASK_ITEMS_WEEKLY:
            return self._run_if_idle("items", full=True, triggered_by="scheduler-weekly")
        if name == TASK_CONTACTS:
            return self._run_if_idle("contacts", full=False, triggered_by="scheduler")
        if name == TASK_JOBS:
            return self.drain_jobs()
        if name == TASK_HOUSEKEEPING:
            return self.housekeeping()
        raise ValueError(f"unknown orchestrator task: {name}")

    def _execute(self, name: str) -> None:
        started_at = self._now()
        try:
            result: Dict[str, Any] = self.run_task(name)
        except AppError as exc:
            result = {"status": "failed", "error": exc.code}
            self.app.logger.warning("orchestrator_task_rejected", extra={"task": name, "error": exc.code})
        except Exception as exc:  # noqa: BLE001
            result = {"status": "failed", "error": str(exc)[:200]}
            self.app.logger.exception("orchestrator_task_failed", extra={"task": name})
        with self._state_lock:
            self._tasks[name]["last_run_at"] = started_at
            self._tasks[name]["last_result"] = result

    def _loop(self, name: str) -> None:
        while not self._stop_event.is_set():
            now = self._now()
            due = self._next_due(name, now)
            if now < due:
                self._stop_event.wait(min(self._tick_seconds, (due - now).total_seconds()))
                continue
            with self._state_lock:
                self._tasks[name]["next_run_at"] = None
            if self.enabled or name == TASK_HOUSEKEEPING:
                self._execute(name)

    # Lifecycle.

    def start(self) -> None:
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._loop, args=(name,), name=f"sync-orchestrator-{name}", daemon=True)
            for name in TASKS
        ]
        if self.app.config.get("SYNC_RUN_ON_STARTUP", False):
            self._threads.append(
                threading.Thread(
                    target=self._run_if_idle,
                    args=("items",),
                    kwargs={"full": False, "triggered_by": "startup"},
                    name="sync-orchestrator-startup",
                    daemon=True,
                )
            )
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def configure(self, mode: str | None = None, enabled: bool | None = None) -> Dict[str, Any]:
        if mode is not None:
            normalized = str(mode).strip().lower()
            if normalized not in SYNC_MODES:
                raise ValidationError(code="mode_invalid", message_key="mode_invalid", details=f"mode={mode}")
            with self._state_lock:
                if normalized != self.mode:
                    self.mode = normalized
                    self._tasks[TASK_ITEMS]["next_run_at"] = None
        if enabled is not None:
            self.enabled = bool(enabled)
        self.app.logger.info("orchestrator_configured", extra={"mode": self.mode, "enabled": self.enabled})
        return self.status()

    def status(self) -> Dict[str, Any]:
        now = self._now()
        with self._state_lock:
            tasks = {
                name: {
                    "last_run_at": _iso(state["last_run_at"]),
                    "next_run_at": _iso(state["next_run_at"]),
                    "last_result": state["last_result"],
                }
                for name, state in self._tasks.items()
            }
        with self._locks_guard:
            busy = sorted(kind for kind, lock in self._locks.items() if lock.locked())
        return {
            "mode": self.mode,
            "enabled": self.enabled,
            "running": self.running,
            "timezone": str(self.tz),
            "polling_interval_minutes": self.current_interval_minutes(now) if self.mode == SYNC_MODE_POLLING else None,
            "busy_kinds": busy,
            "tasks": tasks,
        }


def get_sync_orchestrator(app: Flask) -> SyncOrchestrator:
    orchestrator = app.extensions.get("sync_orchestrator")
    if orchestrator is None:
        orchestrator = SyncOrchestrator(app)
        app.extensions["sync_orchestrator"] = orchestrator
    return orchestrator


def start_sync_orchestrator(app: Flask) -> SyncOrchestrator | None:
    if not _should_start_orchestrator(app):
        return None
    orchestrator = get_sync_orchestrator(app)
    orchestrator.start()
    app.logger.info(
        "Sync orchestrator started: mode=%s tz=%s drain=%ss",
        orchestrator.mode,
        orchestrator.tz,
        orchestrator.drain_interval,
    )
    return orchestrator


def _should_start_orchestrator(app: Flask) -> bool:
    if not app.config.get("SYNC_SCHEDULER_ENABLED", False):
        return False
    if app.config.get("TESTING"):
        return False
    if app.debug:
        run_main = os.environ.get("WERKZEUG_RUN_MAIN")
        if run_main and run_main.lower() != "true":
            return False
    return True
