from __future__ import annotations

from typing import Dict


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "sync_completed": "Sync finished.",
        "job_requeued": "Job queued for another attempt.",
        "jobs_processed": "Job queue drained.",
        "webhook_accepted": "Webhook accepted.",
        "scheduler_updated": "Scheduler settings updated.",
        "order_approved": "Order approved and queued for the ERP.",
        "customer_registered": "Customer registered and queued for the ERP.",
    },
    "error": {
        "action_invalid": "This action is not valid for the operation.",
        "auth_required": "Operator token required.",
        "permission_denied": "You are not allowed to perform this action.",
        "status_invalid": "The current status does not allow this action.",
        "not_found": "Resource not found.",
        "job_not_found": "Job not found.",
        "job_already_completed": "Completed jobs cannot be retried.",
        "job_in_progress": "The job is being processed right now.",
        "order_not_found": "Order not found.",
        "customer_not_found": "Customer not found.",
        "email_required": "Email is required.",
        "email_already_registered": "Email already registered.",
        "kind_not_supported": "Sync kind not supported.",
        "subsystem_not_supported": "Webhook subsystem not supported.",
        "webhook_signature_missing": "Webhook secret missing.",
        "webhook_signature_invalid": "Webhook secret invalid.",
        "mode_invalid": "Sync mode must be polling or webhook.",
        "payload_invalid": "Request payload is invalid.",
        "since_invalid": "The since timestamp is not a valid ISO date.",
        "rate_limit_exceeded": "Too many requests. Try again shortly.",
        "sync_in_progress": "A sync for this kind is already running.",
        "sync_failed": "Sync failed.",
        "erp_auth_failed": "ERP credentials were rejected. Check the integration settings.",
        "erp_rate_limited": "The ERP is throttling requests. We will retry automatically.",
        "erp_temporarily_unavailable": "We could not reach the ERP right now. We will retry automatically.",
        "erp_record_rejected": "The ERP rejected the record. Review the data and retry.",
        "unexpected_error": "The operation could not be completed. Try again shortly.",
    },
}


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)
