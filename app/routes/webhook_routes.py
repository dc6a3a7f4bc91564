from __future__ import annotations

import json

from flask import Blueprint, current_app, jsonify, request

from app.contexts.webhooks.ingestor import get_webhook_ingestor


webhook_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


def _request_payload() -> dict:
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    # Zoho workflow webhooks may post the entity as a form field.
    raw = request.form.get("JSONString")
    if raw:
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


@webhook_bp.route("/erp/<subsystem>", methods=["POST"])
def erp_webhook(subsystem: str):
    body = request.get_data(cache=True)
    ack = get_webhook_ingestor(current_app._get_current_object()).handle(
        subsystem,
        request.args.get("action"),
        _request_payload(),
        headers=request.headers,
        body=body,
    )
    return jsonify(ack), 200
