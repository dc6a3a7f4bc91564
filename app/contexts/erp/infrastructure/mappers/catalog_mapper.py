from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

from app.contexts.erp.domain.contracts import ExternalRecord
from app.contexts.erp.domain.gateway import ErpValidationError


DEFAULT_CATEGORY = "novelty"

_CATEGORY_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sunglasses", ("sunglass", "eyewear", "glasses")),
    ("cellular", ("cellular", "phone", "mobile", "charger", "cable", "accessori")),
    ("caps", ("cap", "hat", "headwear", "beanie")),
    ("perfumes", ("perfume", "fragrance", "cologne")),
)

STOREFRONT_REF_FIELD = "cf_storefront_ref"


def map_category(category_name: str | None) -> str:
    normalized = str(category_name or "").strip().lower()
    if not normalized:
        return DEFAULT_CATEGORY
    for category, markers in _CATEGORY_RULES:
        if any(marker in normalized for marker in markers):
            return category
    return DEFAULT_CATEGORY


def _coerce_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    raw = str(value).strip()
    return raw or None


def _coerce_tags(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(tag).strip() for tag in value if str(tag).strip()]
    raw = _coerce_str(value)
    if not raw:
        return []
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


def _coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool) or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_positive_int(value: Any) -> int | None:
    parsed = _coerce_float(value)
    if parsed is None or parsed < 1:
        return None
    return int(parsed)


@dataclass(frozen=True)
class CustomAttribute:
    label: str
    fallback_field: str
    coerce: Callable[[Any], Any]
    default: Any = None


ITEM_ATTRIBUTES: dict[str, CustomAttribute] = {
    "subcategory": CustomAttribute("subcategory", "cf_subcategory", _coerce_str),
    "tags": CustomAttribute("tags", "cf_tags", _coerce_tags, default=()),
    "compare_at_price": CustomAttribute("compare_at_price", "cf_compare_at_price", _coerce_float),
    "min_order_quantity": CustomAttribute("min_order_quantity", "cf_min_order_quantity", _coerce_positive_int, 1),
    "case_pack_size": CustomAttribute("case_pack_size", "cf_case_pack_size", _coerce_positive_int, 1),
}

CONTACT_ATTRIBUTES: dict[str, CustomAttribute] = {
    "storefront_ref": CustomAttribute("storefront_ref", STOREFRONT_REF_FIELD, _coerce_str),
    "price_tier": CustomAttribute("price_tier", "cf_price_tier", _coerce_str),
}


def _normalize_label(label: object) -> str:
    return "_".join(str(label or "").strip().lower().split())


def resolve_custom_attributes(payload: dict, table: dict[str, CustomAttribute]) -> dict[str, Any]:
    custom_fields = payload.get("custom_fields")
    by_label: dict[str, Any] = {}
    if isinstance(custom_fields, list):
        for field in custom_fields:
            if isinstance(field, dict):
                by_label.setdefault(_normalize_label(field.get("label")), field.get("value"))

    resolved: dict[str, Any] = {}
    for canonical, attribute in table.items():
        raw = by_label.get(attribute.label)
        if raw is None:
            raw = payload.get(attribute.fallback_field)
        value = attribute.coerce(raw)
        if value is None or value == []:
            default = attribute.default
            value = list(default) if isinstance(default, tuple) else default
        resolved[canonical] = value
    return resolved


def _require_external_id(record: ExternalRecord) -> str:
    external_id = str(record.external_id or "").strip()
    if not external_id:
        raise ErpValidationError(f"{record.kind} record without id")
    return external_id


def _is_active(payload: dict) -> bool:
    return str(payload.get("status") or "").strip().lower() == "active"


def map_item(record: ExternalRecord) -> dict[str, Any]:
    """ERP item -> ERP-owned product columns."""
    payload = record.payload if isinstance(record.payload, dict) else {}
    external_id = _require_external_id(record)
    name = _coerce_str(payload.get("name"))
    if not name:
        raise ErpValidationError("missing name")
    rate = _coerce_float(payload.get("rate"))
    if rate is None:
        raise ErpValidationError("invalid rate")

    attributes = resolve_custom_attributes(payload, ITEM_ATTRIBUTES)
    is_online = payload.get("show_in_storefront") is True
    reorder_level = _coerce_float(payload.get("reorder_level"))
    stock_on_hand = _coerce_float(payload.get("stock_on_hand")) or 0.0

    return {
        "external_id": external_id,
        "sku": _coerce_str(payload.get("sku")) or f"ZOHO-{external_id}",
        "name": name,
        "description": _coerce_str(payload.get("description")),
        "category": map_category(payload.get("category_name")),
        "subcategory": attributes["subcategory"],
        "brand": _coerce_str(payload.get("brand")) or _coerce_str(payload.get("manufacturer")),
        "tags": json.dumps(attributes["tags"], separators=(",", ":"), ensure_ascii=True),
        "base_price": round(rate, 2),
        "compare_at_price": attributes["compare_at_price"],
        "min_order_quantity": attributes["min_order_quantity"],
        "case_pack_size": attributes["case_pack_size"],
        "stock_quantity": max(0, int(stock_on_hand)),
        "low_stock_threshold": int(reorder_level) if reorder_level is not None else 10,
        "erp_status": _coerce_str(payload.get("status")) or "unknown",
        "is_online": 1 if is_online else 0,
        "delisted": 0 if (_is_active(payload) and is_online) else 1,
        "erp_modified_at": record.modified_at,
    }


def _contact_persons(payload: dict) -> list[dict]:
    persons = payload.get("contact_persons")
    if not isinstance(persons, list):
        return []
    return [person for person in persons if isinstance(person, dict)]


def primary_email(payload: dict) -> str | None:
    email = _coerce_str(payload.get("email"))
    if email:
        return email.lower()
    for person in _contact_persons(payload):
        if person.get("is_primary_contact") is True:
            person_email = _coerce_str(person.get("email"))
            if person_email:
                return person_email.lower()
    return None


def secondary_emails(payload: dict) -> list[str]:
    emails = []
    for person in _contact_persons(payload):
        if person.get("is_primary_contact") is True:
            continue
        person_email = _coerce_str(person.get("email"))
        if person_email and person_email.lower() not in emails:
            emails.append(person_email.lower())
    return emails


def map_contact(record: ExternalRecord) -> dict[str, Any]:
    """ERP contact -> ERP-owned customer columns plus identity hints."""
    payload = record.payload if isinstance(record.payload, dict) else {}
    external_id = _require_external_id(record)
    email = primary_email(payload)
    others = secondary_emails(payload)
    if not email and not others:
        raise ErpValidationError("contact without email")

    attributes = resolve_custom_attributes(payload, CONTACT_ATTRIBUTES)
    is_active = _is_active(payload)
    contact_name = _coerce_str(payload.get("contact_name"))
    return {
        "external_id": external_id,
        "company_name": _coerce_str(payload.get("company_name")) or contact_name,
        "contact_name": contact_name,
        "phone": _coerce_str(payload.get("phone")) or _coerce_str(payload.get("mobile")),
        "erp_status": _coerce_str(payload.get("status")) or "unknown",
        "erp_is_active": 1 if is_active else 0,
        "delisted": 0 if is_active else 1,
        "erp_modified_at": record.modified_at,
        "primary_email": email,
        "secondary_emails": others,
        "storefront_ref": attributes["storefront_ref"],
        "price_tier": attributes["price_tier"],
    }
