from __future__ import annotations

from typing import Any, Dict

from app.ui_strings import error_message


class AppError(Exception):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True

    def __init__(
        self,
        code: str | None = None,
        message_key: str | None = None,
        http_status: int | None = None,
        critical: bool | None = None,
        details: str | None = None,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        self.code = (code or self.default_code).strip()
        self.message_key = (message_key or self.default_message_key).strip()
        self.http_status = int(http_status or self.default_http_status)
        self.critical = bool(self.default_critical if critical is None else critical)
        self.details = (details or "").strip() or None
        self.payload = dict(payload or {})
        super().__init__(self.details or self.code)

    def user_message(self) -> str:
        fallback = error_message("unexpected_error", "The operation could not be completed.")
        return error_message(self.message_key, fallback)

    def to_response_payload(self, request_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.user_message(),
            "request_id": request_id,
        }
        if self.payload:
            payload.update(self.payload)
        return payload


class UserActionError(AppError):
    default_code = "action_invalid"
    default_message_key = "action_invalid"
    default_http_status = 400
    default_critical = False


class ValidationError(UserActionError):
    default_code = "validation_error"
    default_message_key = "status_invalid"
    default_http_status = 400
    default_critical = False


class PermissionError(UserActionError):
    default_code = "permission_denied"
    default_message_key = "permission_denied"
    default_http_status = 403
    default_critical = False


class NotFoundError(UserActionError):
    default_code = "not_found"
    default_message_key = "not_found"
    default_http_status = 404
    default_critical = False


class ConflictError(UserActionError):
    default_code = "conflict"
    default_message_key = "status_invalid"
    default_http_status = 409
    default_critical = False


class SyncInProgressError(ConflictError):
    default_code = "sync_in_progress"
    default_message_key = "sync_in_progress"


class IntegrationError(AppError):
    default_code = "integration_error"
    default_message_key = "erp_temporarily_unavailable"
    default_http_status = 502
    default_critical = False


class SystemError(AppError):
    default_code = "system_error"
    default_message_key = "unexpected_error"
    default_http_status = 500
    default_critical = True


def classify_erp_failure(exc: Exception) -> tuple[str, str, int, bool]:
    """Map an ERP adapter failure to (code, message_key, http_status, critical)."""
    from app.contexts.erp.domain.gateway import (
        ErpAuthError,
        ErpPermanentError,
        ErpRateLimitedError,
        ErpValidationError,
    )

    if isinstance(exc, ErpAuthError):
        return ("erp_auth_failed", "erp_auth_failed", 502, True)
    if isinstance(exc, ErpRateLimitedError):
        return ("erp_rate_limited", "erp_rate_limited", 503, False)
    if isinstance(exc, (ErpPermanentError, ErpValidationError)):
        return ("erp_record_rejected", "erp_record_rejected", 422, False)
    return ("erp_temporarily_unavailable", "erp_temporarily_unavailable", 502, False)
