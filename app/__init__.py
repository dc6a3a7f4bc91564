import os

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from app.config import Config
from app.db import close_db, init_db
from app.db_migrations import register_db_cli
from app.observability import (
    configure_json_logging,
    ensure_request_id,
    job_queue_health,
    mark_request_start,
    metrics_snapshot,
    observe_response,
    prometheus_metrics_text,
)
from app.security import apply_security_headers, enforce_rate_limit


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    configure_json_logging(app)

    _ensure_database_dir(app)
    _register_error_handlers(app)
    _register_security(app)
    _register_auth(app)
    _register_blueprints(app)
    _register_health(app)
    register_db_cli(app)
    _register_sync_cli(app)
    _maybe_init_schema(app)

    _register_erp_runtime(app)
    _register_orchestrator(app)
    app.teardown_appcontext(close_db)
    return app


def _ensure_database_dir(app: Flask) -> None:
    database_dir = app.config.get("DATABASE_DIR")
    if database_dir:
        os.makedirs(database_dir, exist_ok=True)


def _maybe_init_schema(app: Flask) -> None:
    auto_init = bool(app.config.get("DB_AUTO_INIT", False))
    if app.testing:
        # Tests build their schema in place instead of running migrations.
        auto_init = True
    if not auto_init:
        return

    flask_env = (os.environ.get("FLASK_ENV", "development") or "development").strip().lower()
    if not app.testing and flask_env != "development":
        app.logger.warning("DB_AUTO_INIT ignored outside development.")
        return

    with app.app_context():
        init_db()


def _register_blueprints(app: Flask) -> None:
    from app.routes.admin_routes import admin_bp
    from app.routes.storefront_routes import storefront_bp
    from app.routes.webhook_routes import webhook_bp

    app.register_blueprint(admin_bp)
    app.register_blueprint(storefront_bp)
    app.register_blueprint(webhook_bp)


def _register_auth(app: Flask) -> None:
    from app.auth import register_auth

    register_auth(app)


def _register_sync_cli(app: Flask) -> None:
    from app.cli import register_sync_cli

    register_sync_cli(app)


def _register_erp_runtime(app: Flask) -> None:
    from app.contexts.erp.interfaces.workers.runtime import configure_circuit_breaker

    configure_circuit_breaker(app)


def _register_orchestrator(app: Flask) -> None:
    from app.scheduler import start_sync_orchestrator

    start_sync_orchestrator(app)


def _register_error_handlers(app: Flask) -> None:
    from app.contexts.erp.domain.gateway import ErpGatewayError
    from app.errors import AppError, IntegrationError, SystemError, classify_erp_failure

    @app.before_request
    def _ensure_request_id() -> None:
        ensure_request_id()
        mark_request_start()

    @app.after_request
    def _append_request_id(response):
        response.headers["X-Request-Id"] = ensure_request_id()
        response = observe_response(response)
        return apply_security_headers(response)

    def _log_error(error: AppError, request_id: str) -> None:
        log_method = app.logger.error if error.critical else app.logger.warning
        log_method(
            "application_error",
            extra={
                "request_id": request_id,
                "error_code": error.code,
                "http_status": error.http_status,
                "message_key": error.message_key,
                "details": error.details,
                "request_path": request.path,
                "http_method": request.method,
            },
            exc_info=error.critical,
        )

    @app.errorhandler(AppError)
    def _handle_app_error(exc: AppError):
        request_id = ensure_request_id()
        _log_error(exc, request_id)
        return jsonify(exc.to_response_payload(request_id)), exc.http_status

    @app.errorhandler(ErpGatewayError)
    def _handle_erp_error(exc: ErpGatewayError):
        request_id = ensure_request_id()
        code, message_key, http_status, critical = classify_erp_failure(exc)
        mapped = IntegrationError(
            code=code,
            message_key=message_key,
            http_status=http_status,
            critical=critical,
            details=str(exc),
        )
        _log_error(mapped, request_id)
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc

        request_id = ensure_request_id()
        mapped = SystemError(
            code="unexpected_error",
            message_key="unexpected_error",
            http_status=500,
            critical=True,
            details=str(exc),
        )
        app.logger.exception(
            "unexpected_exception",
            extra={
                "request_id": request_id,
                "error_code": mapped.code,
                "request_path": request.path,
                "http_method": request.method,
            },
        )
        return jsonify(mapped.to_response_payload(request_id)), mapped.http_status


def _register_security(app: Flask) -> None:
    @app.before_request
    def _rate_limit_guard():
        return enforce_rate_limit()


def _register_health(app: Flask) -> None:
    from app.contexts.erp.infrastructure.circuit_breaker import erp_circuit_snapshot

    def _queue_state() -> dict:
        from app.db import get_read_db

        return job_queue_health(get_read_db())

    @app.route("/health")
    def health():
        db_path = app.config.get("DB_PATH") or "unknown"
        backend = "postgres" if str(db_path).startswith("postgres") else "sqlite"
        payload = {
            "status": "ok",
            "db": backend,
            "env": app.config.get("ENV", "unknown"),
            "erp_mode": app.config.get("ERP_MODE"),
            "circuit": erp_circuit_snapshot()["state"],
            "metrics": {
                "http": metrics_snapshot(),
            },
        }
        try:
            payload["worker"] = _queue_state()
        except Exception:
            app.logger.exception("health_queue_check_failed")
            payload["status"] = "degraded"
            payload["worker"] = {
                "worker_status": "unknown",
                "worker_active": False,
                "backlog_critical": False,
                "queue": {
                    "pending_jobs": 0,
                    "processing_jobs": 0,
                    "failed_jobs": 0,
                    "completed_jobs": 0,
                    "oldest_pending_age_seconds": 0,
                    "last_attempt_at": None,
                },
            }
        return payload, 200

    @app.route("/metrics")
    def metrics():
        try:
            queue_state = _queue_state()
        except Exception:
            app.logger.exception("metrics_queue_check_failed")
            queue_state = None
        body = prometheus_metrics_text(queue_state=queue_state, circuit_state=erp_circuit_snapshot()["state"])
        return app.response_class(body, mimetype="text/plain; version=0.0.4")
