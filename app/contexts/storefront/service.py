from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable

from flask import current_app

from app.contexts.jobs import queue
from app.db import inserted_id
from app.errors import ConflictError, NotFoundError, ValidationError


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _clean(value: Any) -> str | None:
    raw = str(value or "").strip()
    return raw or None


def register_customer(db, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create a storefront customer and queue its ERP contact in the same transaction."""
    email = (_clean(data.get("email")) or "").lower()
    if not email or "@" not in email:
        raise ValidationError(code="email_required", message_key="email_required")
    existing = db.execute("SELECT id FROM customers WHERE LOWER(email) = ?", (email,)).fetchone()
    if existing:
        raise ConflictError(code="email_already_registered", message_key="email_already_registered")

    now_iso = _iso_now()
    contact_name = _clean(data.get("contact_name"))
    company_name = _clean(data.get("company_name"))
    phone = _clean(data.get("phone"))
    cursor = db.execute(
        """
        INSERT INTO customers (
            email, contact_name, company_name, phone, storefront_status, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, 'pending_approval', ?, ?)
        RETURNING id
        """,
        (email, contact_name, company_name, phone, now_iso, now_iso),
    )
    customer_id = inserted_id(cursor)
    billing_address = data.get("billing_address") if isinstance(data.get("billing_address"), dict) else None
    job = queue.enqueue(
        db,
        queue.JOB_TYPE_CREATE_CUSTOMER,
        ("customer", customer_id),
        {
            "email": email,
            "contact_name": contact_name,
            "company_name": company_name,
            "phone": phone,
            "billing_address": billing_address,
        },
    )
    db.commit()
    current_app.logger.info(
        "customer_registered",
        extra={"customer_id": customer_id, "job_id": job.get("id")},
    )
    return {"customer_id": customer_id, "job_id": job.get("id"), "already_queued": bool(job.get("already_queued"))}


def _order_lines(db, items: Iterable[Dict[str, Any]]) -> list[Dict[str, Any]]:
    lines = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError(code="payload_invalid", message_key="payload_invalid", details="order item must be an object")
        try:
            product_id = int(item.get("product_id"))
            quantity = int(item.get("quantity") or 1)
        except (TypeError, ValueError) as exc:
            raise ValidationError(code="payload_invalid", message_key="payload_invalid", details="invalid order item") from exc
        product = db.execute(
            "SELECT id, sku, name, base_price, delisted FROM products WHERE id = ?",
            (product_id,),
        ).fetchone()
        if product is None or int(product["delisted"] or 0) or quantity <= 0:
            raise ValidationError(
                code="payload_invalid",
                message_key="payload_invalid",
                details=f"product {product_id} cannot be ordered",
            )
        lines.append(
            {
                "product_id": product["id"],
                "sku": product["sku"],
                "product_name": product["name"],
                "quantity": quantity,
                "unit_price": float(product["base_price"] or 0.0),
            }
        )
    if not lines:
        raise ValidationError(code="payload_invalid", message_key="payload_invalid", details="order without items")
    return lines


def place_order(
    db,
    customer_id: int,
    items: Iterable[Dict[str, Any]],
    *,
    shipping_address: str | None = None,
    notes: str | None = None,
) -> Dict[str, Any]:
    customer = db.execute("SELECT id FROM customers WHERE id = ?", (customer_id,)).fetchone()
    if customer is None:
        raise NotFoundError(code="customer_not_found", message_key="customer_not_found")
    lines = _order_lines(db, items)
    now_iso = _iso_now()
    order_number = f"WEB-{uuid.uuid4().hex[:10].upper()}"
    total = round(sum(line["quantity"] * line["unit_price"] for line in lines), 2)
    cursor = db.execute(
        """
        INSERT INTO orders (
            order_number, customer_id, status, shipping_address, notes, total_amount, created_at, updated_at
        )
        VALUES (?, ?, 'pending', ?, ?, ?, ?, ?)
        RETURNING id
        """,
        (order_number, customer_id, _clean(shipping_address), _clean(notes), total, now_iso, now_iso),
    )
    order_id = inserted_id(cursor)
    for line in lines:
        db.execute(
            """
            INSERT INTO order_items (order_id, product_id, sku, product_name, quantity, unit_price)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (order_id, line["product_id"], line["sku"], line["product_name"], line["quantity"], line["unit_price"]),
        )
    db.commit()
    return {"order_id": order_id, "order_number": order_number, "status": "pending", "total_amount": total}


def approve_order(db, order_id: int) -> Dict[str, Any]:
    """Approve a pending order and queue the ERP sales order push."""
    order = db.execute(
        "SELECT id, order_number, status, external_id FROM orders WHERE id = ?",
        (order_id,),
    ).fetchone()
    if order is None:
        raise NotFoundError(code="order_not_found", message_key="order_not_found")
    if order["status"] not in ("pending", "approved"):
        raise ValidationError(
            code="status_invalid",
            message_key="status_invalid",
            details=f"order is {order['status']}",
        )

    now_iso = _iso_now()
    db.execute(
        "UPDATE orders SET status = 'approved', updated_at = ? WHERE id = ? AND status = 'pending'",
        (now_iso, order_id),
    )
    job = queue.enqueue(
        db,
        queue.JOB_TYPE_PUSH_ORDER,
        ("order", int(order["id"])),
        {"order_number": order["order_number"]},
    )
    db.commit()
    current_app.logger.info(
        "order_approved",
        extra={"order_id": order["id"], "order_number": order["order_number"], "job_id": job.get("id")},
    )
    return {
        "order_id": order["id"],
        "order_number": order["order_number"],
        "status": "approved",
        "job_id": job.get("id"),
        "already_queued": bool(job.get("already_queued")),
    }
