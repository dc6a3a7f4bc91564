from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.contexts.storefront.service import place_order, register_customer
from app.db import get_db
from app.errors import ValidationError
from app.ui_strings import success_message


storefront_bp = Blueprint("storefront", __name__, url_prefix="/api/storefront")


@storefront_bp.route("/customers", methods=["POST"])
def customers_create():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError(code="payload_invalid", message_key="payload_invalid")
    result = register_customer(get_db(), payload)
    return jsonify({"message": success_message("customer_registered"), **result}), 201


@storefront_bp.route("/orders", methods=["POST"])
def orders_create():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError(code="payload_invalid", message_key="payload_invalid")
    try:
        customer_id = int(payload.get("customer_id"))
    except (TypeError, ValueError) as exc:
        raise ValidationError(code="payload_invalid", message_key="payload_invalid", details="customer_id") from exc
    items = payload.get("items") if isinstance(payload.get("items"), list) else []
    result = place_order(
        get_db(),
        customer_id,
        items,
        shipping_address=payload.get("shipping_address"),
        notes=payload.get("notes"),
    )
    return jsonify(result), 201
