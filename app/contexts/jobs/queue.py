from __future__ import annotations

import json
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List

from flask import current_app

from app.db import inserted_id
from app.errors import ConflictError, NotFoundError, ValidationError
from app.observability import (
    observe_job_dead_letter,
    observe_job_deferred,
    observe_job_retry,
)


JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"
JOB_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_PROCESSING, JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)

JOB_TYPE_CREATE_CUSTOMER = "create_customer"
JOB_TYPE_PUSH_ORDER = "push_order"
JOB_ENTITY_TYPES = {
    JOB_TYPE_CREATE_CUSTOMER: "customer",
    JOB_TYPE_PUSH_ORDER: "order",
}

_JOB_COLUMNS = """
    id, job_type, entity_type, entity_id, idempotency_key, status, payload, attempts, max_attempts,
    error_message, external_id, next_attempt_at, last_attempt_at, completed_at, created_at, updated_at
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_iso_utc(value) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = raw
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _json_loads(value) -> Dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    raw = str(value or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _json_dumps(value: Dict[str, object]) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=True, default=str)


def _row_to_dict(row) -> Dict[str, object]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    keys = getattr(row, "keys", None)
    if callable(keys):
        return {key: row[key] for key in row.keys()}
    return dict(row)


def _job_view(row) -> Dict[str, object]:
    job = _row_to_dict(row)
    if not job:
        return {}
    job["payload"] = _json_loads(job.get("payload"))
    job["id"] = int(job["id"])
    job["entity_id"] = int(job["entity_id"])
    job["attempts"] = int(job.get("attempts") or 0)
    job["max_attempts"] = int(job.get("max_attempts") or 1)
    return job


def _config_int(key: str, default: int, minimum: int, maximum: int) -> int:
    try:
        value = int(current_app.config.get(key, default) or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, min(maximum, value))


def default_max_attempts() -> int:
    return _config_int("JOB_QUEUE_MAX_ATTEMPTS", 3, 1, 50)


def next_backoff_seconds(attempt: int) -> float:
    base = _config_int("JOB_QUEUE_BACKOFF_SECONDS", 30, 1, 3600)
    max_seconds = max(base, _config_int("JOB_QUEUE_MAX_BACKOFF_SECONDS", 600, 1, 86400))
    exponent = max(0, int(attempt) - 1)
    raw_backoff = float(min(max_seconds, base * (2**exponent)))
    jitter_ratio = float(current_app.config.get("JOB_QUEUE_BACKOFF_JITTER_RATIO", 0.25) or 0.0)
    jitter_ratio = max(0.0, min(1.0, jitter_ratio))
    jitter_window = raw_backoff * jitter_ratio
    jitter = random.uniform(-jitter_window, jitter_window) if jitter_window > 0 else 0.0
    return max(1.0, min(float(max_seconds), raw_backoff + jitter))


def default_idempotency_key(job_type: str, entity_type: str, entity_id: int) -> str:
    return f"{job_type}:{entity_type}:{int(entity_id)}"


def _normalize_entity_ref(job_type: str, entity_ref) -> tuple[str, int]:
    if isinstance(entity_ref, dict):
        entity_type = str(entity_ref.get("type") or "").strip()
        entity_id = entity_ref.get("id")
    elif isinstance(entity_ref, (tuple, list)) and len(entity_ref) == 2:
        entity_type, entity_id = str(entity_ref[0] or "").strip(), entity_ref[1]
    else:
        entity_type, entity_id = JOB_ENTITY_TYPES.get(job_type, ""), entity_ref
    try:
        parsed_id = int(entity_id)
    except (TypeError, ValueError):
        parsed_id = 0
    if not entity_type or parsed_id <= 0:
        raise ValidationError(code="payload_invalid", message_key="payload_invalid", details="entity reference invalid")
    return entity_type, parsed_id


def enqueue(
    db,
    job_type: str,
    entity_ref,
    payload: Dict[str, object] | None = None,
    *,
    idempotency_key: str | None = None,
    max_attempts: int | None = None,
) -> Dict[str, object]:
    """Insert a pending job in the caller's transaction (no commit)."""
    normalized_type = str(job_type or "").strip().lower()
    if normalized_type not in JOB_ENTITY_TYPES:
        raise ValidationError(code="action_invalid", message_key="action_invalid", details=f"job_type={job_type}")
    entity_type, entity_id = _normalize_entity_ref(normalized_type, entity_ref)
    key = str(idempotency_key or "").strip() or default_idempotency_key(normalized_type, entity_type, entity_id)

    existing = db.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE idempotency_key = ?", (key,)).fetchone()
    if existing:
        job = _job_view(existing)
        job["already_queued"] = True
        return job

    now_iso = _iso_utc(_utcnow())
    attempts_budget = max(1, int(max_attempts)) if max_attempts else default_max_attempts()
    cursor = db.execute(
        """
        INSERT INTO jobs (
            job_type, entity_type, entity_id, idempotency_key, status, payload,
            attempts, max_attempts, next_attempt_at, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
        RETURNING id
        """,
        (
            normalized_type,
            entity_type,
            entity_id,
            key,
            JOB_STATUS_PENDING,
            _json_dumps(dict(payload or {})),
            attempts_budget,
            now_iso,
            now_iso,
            now_iso,
        ),
    )
    job_id = inserted_id(cursor)
    current_app.logger.info(
        "job_enqueued",
        extra={
            "job_id": job_id,
            "job_type": normalized_type,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "idempotency_key": key,
        },
    )
    job = get_job(db, job_id) or {}
    job["already_queued"] = False
    return job


def _has_older_open_job(db, job: Dict[str, object]) -> bool:
    row = db.execute(
        """
        SELECT 1
        FROM jobs
        WHERE entity_type = ?
          AND entity_id = ?
          AND status IN (?, ?)
          AND id < ?
        LIMIT 1
        """,
        (
            job["entity_type"],
            job["entity_id"],
            JOB_STATUS_PENDING,
            JOB_STATUS_PROCESSING,
            job["id"],
        ),
    ).fetchone()
    return row is not None


def _due_pending_rows(db, now_iso: str, chunk_size: int):
    """Yield due pending rows oldest first, one chunk at a time."""
    last_created_at, last_id = "", 0
    while True:
        rows = db.execute(
            f"""
            SELECT {_JOB_COLUMNS}
            FROM jobs
            WHERE status = ?
              AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
              AND (created_at > ? OR (created_at = ? AND id > ?))
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (JOB_STATUS_PENDING, now_iso, last_created_at, last_created_at, last_id, chunk_size),
        ).fetchall()
        if not rows:
            return
        for row in rows:
            yield row
        last_created_at, last_id = rows[-1]["created_at"], int(rows[-1]["id"])
        if len(rows) < chunk_size:
            return


def claim_pending(db, limit: int, *, now: datetime | None = None) -> List[Dict[str, object]]:
    """Claim due pending jobs in FIFO order and commit the claims."""
    batch = max(1, int(limit))
    current = now or _utcnow()
    claimed: List[Dict[str, object]] = []
    claimed_at = _iso_utc(current)
    for raw_row in _due_pending_rows(db, claimed_at, batch * 4):
        job = _job_view(raw_row)
        next_attempt_at = _parse_iso_utc(job.get("next_attempt_at"))
        if next_attempt_at and next_attempt_at > current:
            continue
        if _has_older_open_job(db, job):
            continue
        cursor = db.execute(
            """
            UPDATE jobs
            SET status = ?,
                attempts = COALESCE(attempts, 0) + 1,
                last_attempt_at = ?,
                updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (JOB_STATUS_PROCESSING, claimed_at, claimed_at, job["id"], JOB_STATUS_PENDING),
        )
        if int(getattr(cursor, "rowcount", 0) or 0) <= 0:
            continue
        job["status"] = JOB_STATUS_PROCESSING
        job["attempts"] += 1
        job["last_attempt_at"] = claimed_at
        claimed.append(job)
        if len(claimed) >= batch:
            break
    db.commit()
    return claimed


def complete(db, job_id: int, external_id: str | None = None) -> bool:
    now_iso = _iso_utc(_utcnow())
    cursor = db.execute(
        """
        UPDATE jobs
        SET status = ?,
            external_id = COALESCE(?, external_id),
            error_message = NULL,
            next_attempt_at = NULL,
            completed_at = ?,
            updated_at = ?
        WHERE id = ? AND status = ?
        """,
        (JOB_STATUS_COMPLETED, external_id, now_iso, now_iso, int(job_id), JOB_STATUS_PROCESSING),
    )
    return int(getattr(cursor, "rowcount", 0) or 0) > 0


def fail(db, job_id: int, error: str, *, retryable: bool = True) -> Dict[str, object]:
    """Requeue with backoff while attempts remain and the error is retryable; else terminal."""
    job = get_job(db, job_id)
    if not job:
        raise NotFoundError(code="job_not_found", message_key="job_not_found")
    error_text = str(error or "unknown error").strip()[:1000]
    now = _utcnow()
    attempts = int(job["attempts"])
    max_attempts = int(job["max_attempts"])

    if retryable and attempts < max_attempts:
        backoff = next_backoff_seconds(attempts)
        db.execute(
            """
            UPDATE jobs
            SET status = ?, error_message = ?, next_attempt_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (JOB_STATUS_PENDING, error_text, _iso_utc(now + timedelta(seconds=backoff)), _iso_utc(now), job["id"]),
        )
        observe_job_retry(backoff)
        current_app.logger.warning(
            "job_requeued",
            extra={
                "job_id": job["id"],
                "job_type": job["job_type"],
                "attempts": attempts,
                "max_attempts": max_attempts,
                "next_backoff_seconds": round(backoff, 3),
                "error": error_text,
            },
        )
        return {"status": JOB_STATUS_PENDING, "backoff_seconds": backoff}

    db.execute(
        """
        UPDATE jobs
        SET status = ?, error_message = ?, next_attempt_at = NULL, updated_at = ?
        WHERE id = ?
        """,
        (JOB_STATUS_FAILED, error_text, _iso_utc(now), job["id"]),
    )
    observe_job_dead_letter(1)
    current_app.logger.error(
        "job_failed",
        extra={
            "job_id": job["id"],
            "job_type": job["job_type"],
            "attempts": attempts,
            "max_attempts": max_attempts,
            "retryable": bool(retryable),
            "error": error_text,
        },
    )
    return {"status": JOB_STATUS_FAILED, "backoff_seconds": 0.0}


def defer(db, job_id: int, seconds: float, reason: str) -> None:
    """Back to pending without consuming the claimed attempt."""
    now = _utcnow()
    delay = max(1.0, float(seconds or 0))
    db.execute(
        """
        UPDATE jobs
        SET status = ?,
            attempts = CASE WHEN status = ? AND attempts > 0 THEN attempts - 1 ELSE attempts END,
            error_message = ?,
            next_attempt_at = ?,
            updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (
            JOB_STATUS_PENDING,
            JOB_STATUS_PROCESSING,
            str(reason or "deferred")[:1000],
            _iso_utc(now + timedelta(seconds=delay)),
            _iso_utc(now),
            int(job_id),
            JOB_STATUS_PENDING,
            JOB_STATUS_PROCESSING,
        ),
    )
    observe_job_deferred(1)
    current_app.logger.info(
        "job_deferred",
        extra={"job_id": int(job_id), "defer_seconds": round(delay, 3), "reason": reason},
    )


def retry(db, job_id: int) -> Dict[str, object]:
    """Operator requeue: attempts reset and due immediately."""
    job = get_job(db, job_id)
    if not job:
        raise NotFoundError(code="job_not_found", message_key="job_not_found")
    if job["status"] == JOB_STATUS_COMPLETED:
        raise ValidationError(code="job_already_completed", message_key="job_already_completed", http_status=400)
    if job["status"] == JOB_STATUS_PROCESSING:
        raise ConflictError(code="job_in_progress", message_key="job_in_progress")

    now_iso = _iso_utc(_utcnow())
    db.execute(
        """
        UPDATE jobs
        SET status = ?, attempts = 0, error_message = NULL, next_attempt_at = ?, updated_at = ?
        WHERE id = ? AND status IN (?, ?)
        """,
        (JOB_STATUS_PENDING, now_iso, now_iso, job["id"], JOB_STATUS_PENDING, JOB_STATUS_FAILED),
    )
    current_app.logger.info(
        "job_retry_requested",
        extra={"job_id": job["id"], "job_type": job["job_type"], "previous_status": job["status"]},
    )
    return get_job(db, job["id"]) or {}


def recover_stale_jobs(db, timeout_seconds: int) -> int:
    """Fail processing jobs whose attempt outlived the processing budget."""
    cutoff = _utcnow() - timedelta(seconds=max(1, int(timeout_seconds)))
    rows = db.execute(
        "SELECT id, last_attempt_at FROM jobs WHERE status = ? ORDER BY id ASC",
        (JOB_STATUS_PROCESSING,),
    ).fetchall()
    recovered = 0
    for raw_row in rows:
        row = _row_to_dict(raw_row)
        last_attempt = _parse_iso_utc(row.get("last_attempt_at"))
        if last_attempt is not None and last_attempt > cutoff:
            continue
        fail(db, int(row["id"]), "timeout", retryable=True)
        recovered += 1
    return recovered


def get_job(db, job_id: int) -> Dict[str, object] | None:
    row = db.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (int(job_id),)).fetchone()
    if not row:
        return None
    return _job_view(row)


def list_jobs(
    db,
    status: str | Iterable[str] | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, object]]:
    statuses: List[str] = []
    if isinstance(status, str):
        statuses = [status]
    elif status is not None:
        statuses = [str(item) for item in status]
    statuses = [item.strip().lower() for item in statuses if str(item).strip()]
    invalid = [item for item in statuses if item not in JOB_STATUSES]
    if invalid:
        raise ValidationError(code="status_invalid", message_key="status_invalid", details=",".join(invalid))

    where = ""
    params: List[object] = []
    if statuses:
        where = f"WHERE status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    params.extend([max(1, min(500, int(limit))), max(0, int(offset))])
    rows = db.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        {where}
        ORDER BY created_at ASC, id ASC
        LIMIT ? OFFSET ?
        """,
        tuple(params),
    ).fetchall()
    return [_job_view(row) for row in rows]


def queue_counts(db) -> Dict[str, int]:
    counts = {status: 0 for status in JOB_STATUSES}
    for raw_row in db.execute("SELECT status, COUNT(*) AS total FROM jobs GROUP BY status").fetchall():
        row = _row_to_dict(raw_row)
        status = str(row.get("status") or "").strip().lower()
        if status in counts:
            counts[status] = int(row.get("total") or 0)
    counts["total"] = sum(counts.values())
    return counts
