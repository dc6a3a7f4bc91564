from __future__ import annotations

import time
from datetime import datetime
from typing import Dict

from flask import current_app

from app.contexts.erp.domain.gateway import (
    ErpAuthError,
    ErpGateway,
    ErpGatewayError,
    ErpPermanentError,
    ErpRateLimitedError,
    ErpValidationError,
)
from app.contexts.erp.infrastructure.circuit_breaker import get_erp_circuit_breaker
from app.contexts.jobs import queue
from app.contexts.jobs.handlers import JOB_HANDLERS, DependencyNotReady, PermanentJobError
from app.observability import observe_job_processing, set_log_request_id


def _config_int(key: str, default: int, minimum: int, maximum: int) -> int:
    try:
        value = int(current_app.config.get(key, default) or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, min(maximum, value))


def _empty_summary() -> Dict[str, int]:
    return {"processed": 0, "succeeded": 0, "requeued": 0, "failed": 0, "deferred": 0, "recovered": 0}


def process_job_queue(
    db,
    gateway: ErpGateway,
    limit: int | None = None,
    *,
    now: datetime | None = None,
    worker_request_id: str | None = None,
) -> Dict[str, int]:
    """Claim a batch of due jobs and push them through the ERP gateway."""
    batch = max(1, int(limit or _config_int("JOB_QUEUE_BATCH_SIZE", 25, 1, 500)))
    defer_seconds = _config_int("JOB_QUEUE_DEFER_SECONDS", 60, 1, 3600)
    summary = _empty_summary()
    circuit_breaker = get_erp_circuit_breaker()

    summary["recovered"] = queue.recover_stale_jobs(
        db, _config_int("JOB_PROCESSING_TIMEOUT_SECONDS", 300, 1, 86400)
    )
    db.commit()

    jobs = queue.claim_pending(db, batch, now=now)
    auth_failure: str | None = None

    for job in jobs:
        job_id = int(job["id"])
        effective_request_id = str(worker_request_id or "").strip() or f"job-{job_id}"
        set_log_request_id(effective_request_id)
        started = time.perf_counter()
        summary["processed"] += 1

        if auth_failure is not None:
            queue.defer(db, job_id, defer_seconds, auth_failure)
            db.commit()
            summary["deferred"] += 1
            continue

        handler = JOB_HANDLERS.get(str(job["job_type"]))
        if handler is None:
            queue.fail(db, job_id, f"unknown job_type {job['job_type']}", retryable=False)
            db.commit()
            summary["failed"] += 1
            continue

        may_call_erp, circuit_state = circuit_breaker.before_call()
        if not may_call_erp:
            wait = max(float(defer_seconds), circuit_breaker.retry_after_seconds())
            queue.defer(db, job_id, wait, f"erp_circuit_{circuit_state}")
            db.commit()
            summary["deferred"] += 1
            current_app.logger.warning(
                "job_circuit_blocked",
                extra={"job_id": job_id, "circuit_state": circuit_state, "defer_seconds": round(wait, 3)},
            )
            observe_job_processing((time.perf_counter() - started) * 1000.0)
            continue

        try:
            external_id = handler(db, gateway, job)
            queue.complete(db, job_id, external_id)
            db.commit()
            circuit_breaker.record_success()
            summary["succeeded"] += 1
            current_app.logger.info(
                "job_processed",
                extra={
                    "job_id": job_id,
                    "job_type": job["job_type"],
                    "attempts": job["attempts"],
                    "external_id": external_id,
                    "result": "completed",
                },
            )
        except ErpRateLimitedError as exc:
            db.rollback()
            circuit_breaker.trip(exc.retry_after)
            queue.defer(db, job_id, exc.retry_after, f"erp_rate_limited: {exc}")
            db.commit()
            summary["deferred"] += 1
        except ErpAuthError as exc:
            db.rollback()
            auth_failure = f"erp_auth_failed: {exc}"
            queue.defer(db, job_id, defer_seconds, auth_failure)
            db.commit()
            summary["deferred"] += 1
            current_app.logger.error(
                "job_queue_auth_failure",
                extra={"job_id": job_id, "error": str(exc), "remaining_jobs": len(jobs) - summary["processed"]},
            )
        except DependencyNotReady as exc:
            db.rollback()
            queue.defer(db, job_id, defer_seconds, str(exc))
            db.commit()
            summary["deferred"] += 1
        except (ErpPermanentError, ErpValidationError, PermanentJobError) as exc:
            db.rollback()
            circuit_breaker.record_success()
            queue.fail(db, job_id, str(exc), retryable=False)
            db.commit()
            summary["failed"] += 1
        except ErpGatewayError as exc:
            db.rollback()
            circuit_breaker.record_failure()
            outcome = queue.fail(db, job_id, str(exc), retryable=True)
            db.commit()
            summary["requeued" if outcome["status"] == queue.JOB_STATUS_PENDING else "failed"] += 1
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            current_app.logger.exception("job_handler_crashed", extra={"job_id": job_id, "job_type": job["job_type"]})
            outcome = queue.fail(db, job_id, f"{type(exc).__name__}: {exc}", retryable=True)
            db.commit()
            summary["requeued" if outcome["status"] == queue.JOB_STATUS_PENDING else "failed"] += 1
        finally:
            observe_job_processing((time.perf_counter() - started) * 1000.0)

    return summary
