from __future__ import annotations

from abc import ABC, abstractmethod

from app.contexts.erp.domain.contracts import ErpPage, ExternalRecord


SUPPORTED_KINDS = ("items", "contacts", "invoices")
PUSH_KINDS = ("contacts", "salesorders")


class ErpGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        definitive: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.definitive = bool(definitive)


class ErpAuthError(ErpGatewayError):
    def __init__(self, message: str, *, code: str | None = "auth_failed") -> None:
        super().__init__(message, code=code, definitive=True)


class ErpRateLimitedError(ErpGatewayError):
    def __init__(self, message: str, *, retry_after: float | None = None, code: str | None = "rate_limited") -> None:
        super().__init__(message, code=code, definitive=False)
        try:
            parsed = float(retry_after) if retry_after is not None else 0.0
        except (TypeError, ValueError):
            parsed = 0.0
        self.retry_after = max(1.0, parsed)


class ErpTransientError(ErpGatewayError):
    def __init__(self, message: str, *, code: str | None = "transient") -> None:
        super().__init__(message, code=code, definitive=False)


class ErpPermanentError(ErpGatewayError):
    def __init__(self, message: str, *, code: str | None = "rejected") -> None:
        super().__init__(message, code=code, definitive=True)


class ErpValidationError(ErpGatewayError):
    def __init__(self, message: str, *, code: str | None = "invalid_record") -> None:
        super().__init__(message, code=code, definitive=True)


class ErpGateway(ABC):
    @abstractmethod
    def fetch_page(self, kind: str, page: int, since: str | None = None) -> ErpPage:
        raise NotImplementedError

    @abstractmethod
    def fetch_record(self, kind: str, external_id: str) -> ExternalRecord | None:
        raise NotImplementedError

    @abstractmethod
    def push_record(self, kind: str, payload: dict, idempotency_key: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def test_connection(self) -> dict:
        raise NotImplementedError
