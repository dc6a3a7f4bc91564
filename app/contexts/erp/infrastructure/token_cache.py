from __future__ import annotations

import threading
import time
from typing import Callable, Tuple

from app.contexts.erp.domain.gateway import ErpAuthError, ErpGatewayError


RefreshFn = Callable[[], Tuple[str, float]]


class TokenCache:
    """Access token holder refreshed ahead of expiry.

    ``refresh_fn`` returns ``(access_token, expires_in_seconds)``.
    """

    def __init__(
        self,
        refresh_fn: RefreshFn,
        *,
        refresh_margin_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._refresh_fn = refresh_fn
        self._margin = max(0.0, float(refresh_margin_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._expires_at = 0.0
        self.refresh_count = 0

    def get_token(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._expires_at - self._margin:
                return self._token
            try:
                token, expires_in = self._refresh_fn()
            except ErpAuthError:
                self._drop()
                raise
            except ErpGatewayError as exc:
                self._drop()
                raise ErpAuthError(f"Token refresh failed: {exc}") from exc
            token = str(token or "").strip()
            if not token:
                self._drop()
                raise ErpAuthError("Token refresh returned no access token.")
            self._token = token
            self._expires_at = self._clock() + max(0.0, float(expires_in or 0))
            self.refresh_count += 1
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._drop()

    def _drop(self) -> None:
        self._token = None
        self._expires_at = 0.0

    def snapshot(self) -> dict:
        with self._lock:
            remaining = max(0.0, self._expires_at - self._clock()) if self._token else 0.0
            return {
                "has_token": bool(self._token),
                "expires_in_seconds": int(remaining),
                "refresh_count": int(self.refresh_count),
            }
