from __future__ import annotations

from app.contexts.erp.domain.gateway import (
    ErpAuthError,
    ErpGatewayError,
    ErpPermanentError,
    ErpRateLimitedError,
    ErpTransientError,
)


def _body_message(body: object) -> str:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or body.get("error_description")
        if message:
            return str(message).strip()
        return ""
    return str(body or "").strip()[:200]


def parse_retry_after(value: object) -> float | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def classify_http_failure(status: int, body: object = None, retry_after: object = None) -> ErpGatewayError:
    """Map an HTTP failure to the ERP error taxonomy. Pure; never raises."""
    status_code = int(status or 0)
    message = _body_message(body)
    detail = f"ERP HTTP {status_code}" + (f": {message}" if message else "")

    if status_code in {401, 403}:
        return ErpAuthError(detail, code=f"http_{status_code}")
    if status_code == 429:
        return ErpRateLimitedError(detail, retry_after=parse_retry_after(retry_after), code="http_429")
    if status_code == 408 or status_code >= 500 or status_code <= 0:
        return ErpTransientError(detail, code=f"http_{status_code}")
    if 400 <= status_code < 500:
        return ErpPermanentError(detail, code=f"http_{status_code}")
    return ErpTransientError(detail, code=f"http_{status_code}")


def classify_api_code(body: object) -> ErpPermanentError | None:
    """Zoho answers 2xx with ``code != 0`` for business rejections."""
    if not isinstance(body, dict):
        return ErpPermanentError("ERP returned a non-object response.", code="unexpected_response")
    try:
        code = int(body.get("code", 0))
    except (TypeError, ValueError):
        code = -1
    if code == 0:
        return None
    message = _body_message(body) or "ERP rejected the request."
    return ErpPermanentError(f"ERP code {code}: {message}", code=f"api_{code}")
