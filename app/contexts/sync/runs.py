from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from app.db import inserted_id


SYNC_STATUS_RUNNING = "running"
SYNC_STATUS_COMPLETED = "completed"
SYNC_STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_iso_utc(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _run_view(row) -> Dict[str, object]:
    data = dict(row) if isinstance(row, dict) else {key: row[key] for key in row.keys()}
    try:
        messages = json.loads(data.get("error_messages") or "[]")
    except (TypeError, ValueError):
        messages = []
    data["error_messages"] = messages if isinstance(messages, list) else []
    return data


def start_run(db, kind: str, *, sync_mode: str, triggered_by: str, since: str | None = None) -> int:
    cursor = db.execute(
        """
        INSERT INTO sync_runs (kind, status, sync_mode, triggered_by, since, started_at)
        VALUES (?, 'running', ?, ?, ?, ?)
        RETURNING id
        """,
        (kind, sync_mode, triggered_by, since, _iso_utc(_utcnow())),
    )
    return inserted_id(cursor)


def finish_run(
    db,
    sync_run_id: int,
    *,
    status: str,
    counts: Dict[str, int],
    error_messages: List[str],
    error_summary: str | None,
    duration_ms: int,
) -> None:
    db.execute(
        """
        UPDATE sync_runs
        SET status = ?,
            records_in = ?,
            created = ?,
            updated = ?,
            skipped = ?,
            delisted = ?,
            errors = ?,
            error_messages = ?,
            error_summary = ?,
            finished_at = ?,
            duration_ms = ?
        WHERE id = ? AND status = 'running'
        """,
        (
            status,
            int(counts.get("records_in", 0)),
            int(counts.get("created", 0)),
            int(counts.get("updated", 0)),
            int(counts.get("skipped", 0)),
            int(counts.get("delisted", 0)),
            int(counts.get("errors", 0)),
            json.dumps(list(error_messages), ensure_ascii=True),
            (error_summary or "")[:500] or None,
            _iso_utc(_utcnow()),
            max(0, int(duration_ms)),
            sync_run_id,
        ),
    )


def expire_stale_runs(db, kind: str, max_seconds: int, *, now: datetime | None = None) -> int:
    """Fail runs of ``kind`` still marked running after the run budget elapsed."""
    current = now or _utcnow()
    cutoff = current - timedelta(seconds=max(1, int(max_seconds)))
    rows = db.execute(
        "SELECT id, started_at FROM sync_runs WHERE kind = ? AND status = 'running'",
        (kind,),
    ).fetchall()
    expired = 0
    for row in rows:
        started_at = _parse_iso_utc(row["started_at"])
        if started_at is not None and started_at > cutoff:
            continue
        elapsed_ms = int((current - started_at).total_seconds() * 1000) if started_at else 0
        cursor = db.execute(
            """
            UPDATE sync_runs
            SET status = 'failed', error_summary = 'timeout', finished_at = ?, duration_ms = ?
            WHERE id = ? AND status = 'running'
            """,
            (_iso_utc(current), elapsed_ms, row["id"]),
        )
        expired += int(getattr(cursor, "rowcount", 0) or 0)
    return expired


def running_run(db, kind: str) -> Dict[str, object] | None:
    row = db.execute(
        """
        SELECT *
        FROM sync_runs
        WHERE kind = ? AND status = 'running'
        ORDER BY id DESC
        LIMIT 1
        """,
        (kind,),
    ).fetchone()
    return _run_view(row) if row else None


def last_completed_started_at(db, kind: str) -> str | None:
    row = db.execute(
        """
        SELECT started_at
        FROM sync_runs
        WHERE kind = ? AND status = 'completed' AND sync_mode IN ('full', 'incremental')
        ORDER BY started_at DESC, id DESC
        LIMIT 1
        """,
        (kind,),
    ).fetchone()
    return str(row["started_at"]) if row else None


def get_run(db, sync_run_id: int) -> Dict[str, object] | None:
    row = db.execute("SELECT * FROM sync_runs WHERE id = ?", (sync_run_id,)).fetchone()
    return _run_view(row) if row else None


def list_runs(db, *, kind: str | None = None, limit: int = 20) -> List[Dict[str, object]]:
    limit = max(1, min(200, int(limit)))
    if kind:
        rows = db.execute(
            "SELECT * FROM sync_runs WHERE kind = ? ORDER BY started_at DESC, id DESC LIMIT ?",
            (kind, limit),
        ).fetchall()
    else:
        rows = db.execute(
            "SELECT * FROM sync_runs ORDER BY started_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [_run_view(row) for row in rows]
