from __future__ import annotations

import secrets

from flask import request

from app.errors import PermissionError as AppPermissionError


OPERATOR_TOKEN_HEADER = "X-Operator-Token"
_PROTECTED_PREFIX = "/api/admin/"


def register_auth(app) -> None:
    @app.before_request
    def _require_operator_token():
        if not app.config.get("AUTH_ENABLED", True):
            return None

        path = request.path or "/"
        if not path.startswith(_PROTECTED_PREFIX):
            return None
        if request.method == "OPTIONS":
            return None

        provided = str(request.headers.get(OPERATOR_TOKEN_HEADER) or "").strip()
        if not provided:
            raise AppPermissionError(
                code="auth_required",
                message_key="auth_required",
                http_status=401,
                critical=False,
            )

        expected = str(app.config.get("OPERATOR_API_TOKEN") or "").strip()
        if not expected or not secrets.compare_digest(expected, provided):
            raise AppPermissionError(
                code="permission_denied",
                message_key="permission_denied",
                http_status=403,
                critical=False,
            )
        return None
