from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.contexts.erp.domain.gateway import ErpValidationError
from app.contexts.erp.infrastructure.mappers.catalog_mapper import STOREFRONT_REF_FIELD


def _clean(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if value not in (None, "", [], {})}


def map_customer_to_contact(payload: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
    email = str(payload.get("email") or "").strip().lower()
    if not email:
        raise ErpValidationError("customer payload without email")
    contact_name = str(payload.get("contact_name") or "").strip()
    company_name = str(payload.get("company_name") or "").strip()
    first_name, _sep, last_name = contact_name.partition(" ")

    contact = {
        "contact_name": company_name or contact_name or email,
        "company_name": company_name or None,
        "contact_type": "customer",
        "status": "active",
        "contact_persons": [
            _clean(
                {
                    "first_name": first_name,
                    "last_name": last_name,
                    "email": email,
                    "phone": payload.get("phone"),
                    "is_primary_contact": True,
                }
            )
        ],
        "custom_fields": [{"api_name": STOREFRONT_REF_FIELD, "value": idempotency_key}],
    }
    address = payload.get("billing_address")
    if isinstance(address, dict) and any(address.values()):
        contact["billing_address"] = _clean(dict(address) | {"country": address.get("country") or "USA"})
    return _clean(contact)


def map_order_to_sales_order(payload: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
    customer_external_id = str(payload.get("customer_external_id") or "").strip()
    if not customer_external_id:
        raise ErpValidationError("order payload without ERP customer id")
    lines = payload.get("lines") if isinstance(payload.get("lines"), list) else []
    line_items = []
    for line in lines:
        if not isinstance(line, dict):
            continue
        item_id = str(line.get("item_external_id") or "").strip()
        quantity = int(line.get("quantity") or 0)
        if not item_id or quantity <= 0:
            raise ErpValidationError(f"order line without ERP item or quantity: {line.get('sku') or item_id}")
        line_items.append({"item_id": item_id, "quantity": quantity, "rate": float(line.get("unit_price") or 0.0)})
    if not line_items:
        raise ErpValidationError("order payload without lines")

    order_number = str(payload.get("order_number") or "").strip()
    shipping = ", ".join(
        str(part).strip()
        for part in (payload.get("shipping_address"), payload.get("shipping_city"), payload.get("shipping_state"), payload.get("shipping_zip"))
        if part and str(part).strip()
    )
    return _clean(
        {
            "customer_id": customer_external_id,
            "reference_number": idempotency_key,
            "date": datetime.now(timezone.utc).date().isoformat(),
            "line_items": line_items,
            "notes": payload.get("notes") or f"Web order: {order_number}",
            "shipping_address": {"address": shipping} if shipping else None,
        }
    )
