from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.contexts.erp.infrastructure.circuit_breaker import erp_circuit_snapshot
from app.contexts.erp.interfaces.workers.runtime import get_gateway
from app.contexts.jobs import queue
from app.contexts.storefront.service import approve_order
from app.contexts.sync import runs
from app.contexts.sync.engine import normalize_kind
from app.contexts.sync.sales import top_sellers
from app.contexts.webhooks.event_log import get_event_logs
from app.db import get_db
from app.errors import NotFoundError, ValidationError
from app.scheduler import get_sync_orchestrator
from app.ui_strings import error_message, success_message


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")

SYNC_KINDS = ("items", "contacts", "invoices")


def _parse_int(value: str | None, default: int, min_value: int, max_value: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, min(parsed, max_value))


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


@admin_bp.route("/sync/<kind>", methods=["POST"])
def sync_now(kind: str):
    payload = request.get_json(silent=True) or {}
    full = _parse_bool(payload.get("full", request.args.get("full")))
    summary = get_sync_orchestrator(current_app._get_current_object()).trigger(kind, full=full, triggered_by="manual")
    if summary.get("status") != runs.SYNC_STATUS_COMPLETED:
        return (
            jsonify({"error": "sync_failed", "message": error_message("sync_failed"), "sync_run": summary}),
            502,
        )
    return jsonify({"message": success_message("sync_completed"), "sync_run": summary})


@admin_bp.route("/sync/history", methods=["GET"])
def sync_history():
    kind = (request.args.get("kind") or "").strip() or None
    if kind:
        kind = normalize_kind(kind)
    limit = _parse_int(request.args.get("limit"), default=20, min_value=1, max_value=200)
    return jsonify({"sync_runs": runs.list_runs(get_db(), kind=kind, limit=limit)})


@admin_bp.route("/jobs", methods=["GET"])
def jobs_list():
    db = get_db()
    limit = _parse_int(request.args.get("limit"), default=50, min_value=1, max_value=500)
    offset = _parse_int(request.args.get("offset"), default=0, min_value=0, max_value=1_000_000)
    status = (request.args.get("status") or "").strip().lower() or None
    if status and status not in queue.JOB_STATUSES:
        raise ValidationError(code="status_invalid", message_key="status_invalid", details=f"status={status}")

    payload = {"counts": queue.queue_counts(db)}
    if status:
        payload["jobs"] = queue.list_jobs(db, status, limit=limit, offset=offset)
    else:
        payload["pending"] = queue.list_jobs(db, queue.JOB_STATUS_PENDING, limit=limit, offset=offset)
        payload["failed"] = queue.list_jobs(db, queue.JOB_STATUS_FAILED, limit=limit, offset=offset)
    return jsonify(payload)


@admin_bp.route("/jobs/<int:job_id>", methods=["GET"])
def job_detail(job_id: int):
    job = queue.get_job(get_db(), job_id)
    if job is None:
        raise NotFoundError(code="job_not_found", message_key="job_not_found")
    return jsonify({"job": job})


@admin_bp.route("/jobs/<int:job_id>/retry", methods=["POST"])
def job_retry(job_id: int):
    db = get_db()
    job = queue.retry(db, job_id)
    db.commit()
    return jsonify({"message": success_message("job_requeued"), "job": job})


@admin_bp.route("/jobs/process", methods=["POST"])
def jobs_process():
    payload = request.get_json(silent=True) or {}
    raw_limit = payload.get("limit", request.args.get("limit"))
    limit = _parse_int(str(raw_limit) if raw_limit is not None else None, default=0, min_value=0, max_value=500)
    summary = get_sync_orchestrator(current_app._get_current_object()).drain_jobs(limit or None)
    return jsonify({"message": success_message("jobs_processed"), "summary": summary})


@admin_bp.route("/orders/<int:order_id>/approve", methods=["POST"])
def order_approve(order_id: int):
    result = approve_order(get_db(), order_id)
    return jsonify({"message": success_message("order_approved"), **result})


@admin_bp.route("/erp/status", methods=["GET"])
def erp_status():
    app = current_app._get_current_object()
    db = get_db()
    webhook_log, call_log = get_event_logs(app)
    call_stats = call_log.stats()
    orchestrator = get_sync_orchestrator(app)
    scheduler_status = orchestrator.status()

    last_runs = {}
    for kind in SYNC_KINDS:
        latest = runs.list_runs(db, kind=kind, limit=1)
        last_runs[kind] = latest[0] if latest else None

    return jsonify(
        {
            "erp_mode": app.config.get("ERP_MODE"),
            "sync_mode": scheduler_status["mode"],
            "api_calls": {
                "today": call_stats["today"],
                "this_month": call_stats["this_month"],
                "by_action": call_stats["by_action"],
                "last_call_at": call_stats["last_received"],
            },
            "webhooks": webhook_log.stats(),
            "recent_webhooks": webhook_log.recent(10),
            "schedule": scheduler_status["tasks"],
            "last_runs": last_runs,
            "queue": queue.queue_counts(db),
            "circuit": erp_circuit_snapshot(),
        }
    )


@admin_bp.route("/erp/connection", methods=["GET"])
def erp_connection():
    result = get_gateway(current_app._get_current_object()).test_connection()
    return jsonify(result), 200 if result.get("ok") else 502


@admin_bp.route("/webhooks/events", methods=["GET"])
def webhook_events():
    webhook_log, _call_log = get_event_logs(current_app._get_current_object())
    limit = _parse_int(request.args.get("limit"), default=20, min_value=1, max_value=500)
    return jsonify({"events": webhook_log.recent(limit), "stats": webhook_log.stats()})


@admin_bp.route("/sales/top-sellers", methods=["GET"])
def sales_top_sellers():
    limit = _parse_int(request.args.get("limit"), default=10, min_value=1, max_value=100)
    return jsonify({"products": top_sellers(get_db(), limit)})


@admin_bp.route("/scheduler/status", methods=["GET"])
def scheduler_status():
    return jsonify(get_sync_orchestrator(current_app._get_current_object()).status())


@admin_bp.route("/scheduler/config", methods=["PATCH"])
def scheduler_config():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError(code="payload_invalid", message_key="payload_invalid")
    enabled = payload.get("enabled")
    status = get_sync_orchestrator(current_app._get_current_object()).configure(
        mode=payload.get("mode"),
        enabled=None if enabled is None else _parse_bool(enabled),
    )
    return jsonify({"message": success_message("scheduler_updated"), "scheduler": status})
