from __future__ import annotations

from typing import Callable

from flask import current_app

from app.contexts.erp.domain.gateway import ErpGateway
from app.contexts.erp.infrastructure.circuit_breaker import get_erp_circuit_breaker
from app.contexts.webhooks.event_log import get_event_logs
from app.observability import observe_erp_api_call


_GATEWAY_EXTENSION = "erp_gateway"


def erp_call_hook(app) -> Callable[[str, str, int, bool, float], None]:
    _webhook_log, call_log = get_event_logs(app)

    def _on_call(kind: str, method: str, status_code: int, success: bool, duration_ms: float) -> None:
        call_log.record(kind, method.lower(), success, detail=f"HTTP {status_code}" if status_code else "no response")
        observe_erp_api_call(kind, method, "success" if success else "failure", duration_ms)

    return _on_call


def _read_simulator_seed(app) -> int:
    try:
        return int(app.config.get("ERP_SIMULATOR_SEED", 42))
    except (TypeError, ValueError):
        return 42


def build_gateway(app) -> ErpGateway:
    mode = str(app.config.get("ERP_MODE") or "zoho").strip().lower()
    on_call = erp_call_hook(app)
    if mode == "simulator":
        from app.contexts.erp.infrastructure.simulator.deterministic_erp import DeterministicErpSimulator

        return DeterministicErpSimulator(
            seed=_read_simulator_seed(app),
            page_size=int(app.config.get("ERP_PAGE_SIZE", 200) or 200),
            on_call=on_call,
        )
    if mode != "zoho":
        raise RuntimeError(f"Unsupported ERP_MODE: {mode}")

    from app.contexts.erp.infrastructure.zoho_gateway import ZohoErpGateway

    return ZohoErpGateway(
        client_id=app.config.get("ERP_CLIENT_ID"),
        client_secret=app.config.get("ERP_CLIENT_SECRET"),
        refresh_token=app.config.get("ERP_REFRESH_TOKEN"),
        organization_id=app.config.get("ERP_ORGANIZATION_ID"),
        accounts_url=str(app.config.get("ERP_ACCOUNTS_URL")),
        inventory_base_url=str(app.config.get("ERP_INVENTORY_BASE_URL")),
        books_base_url=str(app.config.get("ERP_BOOKS_BASE_URL")),
        timeout_seconds=float(app.config.get("ERP_TIMEOUT_SECONDS", 20) or 20),
        page_size=int(app.config.get("ERP_PAGE_SIZE", 200) or 200),
        refresh_margin_seconds=float(app.config.get("ERP_TOKEN_REFRESH_MARGIN_SECONDS", 60) or 60),
        on_call=on_call,
    )


def get_gateway(app=None) -> ErpGateway:
    """Gateway shared by the process, so the access token survives across runs."""
    app = app or current_app._get_current_object()
    gateway = app.extensions.get(_GATEWAY_EXTENSION)
    if gateway is None:
        gateway = build_gateway(app)
        app.extensions[_GATEWAY_EXTENSION] = gateway
    return gateway


def set_gateway(app, gateway: ErpGateway | None) -> None:
    if gateway is None:
        app.extensions.pop(_GATEWAY_EXTENSION, None)
        return
    app.extensions[_GATEWAY_EXTENSION] = gateway


def configure_circuit_breaker(app) -> None:
    get_erp_circuit_breaker().configure(
        enabled=bool(app.config.get("ERP_CIRCUIT_ENABLED", True)),
        error_rate_threshold=app.config.get("ERP_CIRCUIT_ERROR_RATE_THRESHOLD", 0.6),
        min_samples=app.config.get("ERP_CIRCUIT_MIN_SAMPLES", 5),
        window_seconds=app.config.get("ERP_CIRCUIT_WINDOW_SECONDS", 120),
        open_seconds=app.config.get("ERP_CIRCUIT_OPEN_SECONDS", 30),
        half_open_max_calls=app.config.get("ERP_CIRCUIT_HALF_OPEN_MAX_CALLS", 1),
    )
