from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
import time
from typing import Dict, Tuple

from flask import current_app, request

from app.errors import ValidationError
from app.ui_strings import error_message


class SimpleRateLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, int]] = {}

    def allow(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = time.monotonic()
        with self._lock:
            start, count = self._entries.get(key, (now, 0))
            if now - start >= window_seconds:
                start = now
                count = 0
            count += 1
            self._entries[key] = (start, count)
            if len(self._entries) > 10_000:
                cutoff = now - (window_seconds * 2)
                self._entries = {
                    cached_key: value
                    for cached_key, value in self._entries.items()
                    if value[0] >= cutoff
                }
            retry_after = max(0, int(window_seconds - (now - start)))
            return count <= limit, retry_after

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()


_RATE_LIMITER = SimpleRateLimiter()


def _rate_limit_key() -> str:
    ip = str(request.remote_addr or "").strip() or "unknown"
    route = request.url_rule.rule if request.url_rule else request.path
    return f"{ip}|{request.method}|{route}"


def enforce_rate_limit():
    if not bool(current_app.config.get("RATE_LIMIT_ENABLED", True)):
        return None
    if request.method == "OPTIONS":
        return None
    # ERP webhooks arrive in bursts and are bounded by the executor instead.
    if request.path.startswith("/api/webhooks/"):
        return None

    window_seconds = max(1, int(current_app.config.get("RATE_LIMIT_WINDOW_SECONDS", 60) or 60))
    max_requests = max(1, int(current_app.config.get("RATE_LIMIT_MAX_REQUESTS", 300) or 300))
    allowed, retry_after = _RATE_LIMITER.allow(
        _rate_limit_key(),
        limit=max_requests,
        window_seconds=window_seconds,
    )
    if allowed:
        return None

    if request.path.startswith("/api/"):
        raise ValidationError(
            code="rate_limit_exceeded",
            message_key="rate_limit_exceeded",
            http_status=429,
            critical=False,
            payload={"retry_after": retry_after},
        )
    return (
        error_message("rate_limit_exceeded", "Too many requests. Try again shortly."),
        429,
        {"Retry-After": str(retry_after)},
    )


def apply_security_headers(response):
    if not bool(current_app.config.get("SECURITY_HEADERS_ENABLED", True)):
        return response
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    if request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body or b"", hashlib.sha256).hexdigest()


def verify_shared_secret(
    secret: str | None,
    *,
    body: bytes,
    signature: str | None = None,
    presented_secret: str | None = None,
) -> str:
    """Check webhook credentials.

    Returns "ok", "missing" (nothing presented) or "invalid". The HMAC
    signature wins when both headers are present.
    """
    expected_secret = str(secret or "").strip()
    provided_signature = str(signature or "").strip().lower()
    provided_secret = str(presented_secret or "").strip()
    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature[len("sha256=") :]

    if not provided_signature and not provided_secret:
        return "missing"
    if not expected_secret:
        return "invalid"
    if provided_signature:
        expected_signature = sign_payload(expected_secret, body)
        return "ok" if secrets.compare_digest(expected_signature, provided_signature) else "invalid"
    return "ok" if secrets.compare_digest(expected_secret, provided_secret) else "invalid"


def reset_rate_limiter_for_tests() -> None:
    _RATE_LIMITER.reset()
