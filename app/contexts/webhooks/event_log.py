from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _iso_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class WebhookEvent:
    subsystem: str
    action: str
    timestamp: datetime
    success: bool
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "subsystem": self.subsystem,
            "action": self.action,
            "timestamp": _iso_utc(self.timestamp),
            "success": self.success,
            "detail": self.detail,
        }


def _empty_tally() -> dict:
    return {"total": 0, "successful": 0, "failed": 0}


class EventLog:
    """Bounded ring buffer of inbound events plus day and month tallies.

    Tallies reset only through ``roll_over`` (also applied when recording);
    reading stats never mutates them.
    """

    def __init__(
        self,
        capacity: int = 50,
        *,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._capacity = max(1, int(capacity))
        self._tz = tz or timezone.utc
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._events: deque[WebhookEvent] = deque(maxlen=self._capacity)
        self._reset_tallies(self._clock())

    @property
    def capacity(self) -> int:
        return self._capacity

    def _periods(self, now: datetime) -> tuple[str, str]:
        local = now.astimezone(self._tz)
        return local.strftime("%Y-%m-%d"), local.strftime("%Y-%m")

    def _reset_tallies(self, now: datetime) -> None:
        self._day, self._month = self._periods(now)
        self._today = _empty_tally()
        self._this_month = _empty_tally()
        self._by_action: dict[str, int] = {}
        self._last_received: datetime | None = None

    def _roll_over_locked(self, now: datetime) -> bool:
        day, month = self._periods(now)
        if month != self._month:
            self._month = month
            self._this_month = _empty_tally()
            self._by_action = {}
        if day != self._day:
            self._day = day
            self._today = _empty_tally()
            return True
        return False

    def roll_over(self, now: datetime | None = None) -> bool:
        """Reset day/month tallies when the period changed. Returns True on a new day."""
        with self._lock:
            return self._roll_over_locked(now or self._clock())

    def record(
        self,
        subsystem: str,
        action: str,
        success: bool,
        detail: str | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> WebhookEvent:
        now = timestamp or self._clock()
        event = WebhookEvent(
            subsystem=str(subsystem or "unknown").strip() or "unknown",
            action=str(action or "unknown").strip() or "unknown",
            timestamp=now,
            success=bool(success),
            detail=(str(detail).strip()[:500] or None) if detail else None,
        )
        outcome = "successful" if event.success else "failed"
        with self._lock:
            self._roll_over_locked(now)
            self._events.append(event)
            for tally in (self._today, self._this_month):
                tally["total"] += 1
                tally[outcome] += 1
            action_key = f"{event.subsystem}.{event.action}"
            self._by_action[action_key] = self._by_action.get(action_key, 0) + 1
            self._last_received = now
        return event

    def recent(self, limit: int | None = None) -> list[dict]:
        with self._lock:
            events = list(self._events)
        events.reverse()
        if limit is not None:
            events = events[: max(0, int(limit))]
        return [event.to_dict() for event in events]

    def stats(self) -> dict:
        with self._lock:
            return {
                "day": self._day,
                "month": self._month,
                "today": dict(self._today),
                "this_month": dict(self._this_month),
                "by_action": dict(sorted(self._by_action.items())),
                "last_received": _iso_utc(self._last_received) if self._last_received else None,
                "buffered": len(self._events),
                "capacity": self._capacity,
            }

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._reset_tallies(self._clock())


def get_event_logs(app) -> tuple[EventLog, EventLog]:
    """Process-wide (webhook log, ERP API call log) owned by the Flask app."""
    logs = app.extensions.get("erp_event_logs")
    if logs is None:
        tz = resolve_timezone(app.config.get("SYNC_TIMEZONE"))
        logs = (
            EventLog(int(app.config.get("WEBHOOK_EVENT_LOG_CAPACITY", 50) or 50), tz=tz),
            EventLog(int(app.config.get("ERP_CALL_LOG_CAPACITY", 200) or 200), tz=tz),
        )
        app.extensions["erp_event_logs"] = logs
    return logs


def resolve_timezone(name: object) -> tzinfo:
    raw = str(name or "").strip()
    if not raw:
        return timezone.utc
    try:
        return ZoneInfo(raw)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc
