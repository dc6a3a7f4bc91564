from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict

from app.contexts.erp.domain.gateway import ErpGateway


class DependencyNotReady(RuntimeError):
    """The job depends on another entity that has not reached the ERP yet."""


class PermanentJobError(RuntimeError):
    """Local state makes the job impossible; retrying will not help."""


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _row_to_dict(row) -> Dict[str, object]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    return {key: row[key] for key in row.keys()}


def handle_create_customer(db, gateway: ErpGateway, job: Dict[str, object]) -> str:
    customer = _row_to_dict(
        db.execute(
            """
            SELECT id, email, contact_name, company_name, phone, external_id
            FROM customers
            WHERE id = ?
            """,
            (job["entity_id"],),
        ).fetchone()
    )
    if not customer:
        raise PermanentJobError(f"customer {job['entity_id']} not found")
    if customer.get("external_id"):
        return str(customer["external_id"])

    payload = dict(job.get("payload") or {})
    payload.update(
        {
            "email": customer["email"],
            "contact_name": customer.get("contact_name") or payload.get("contact_name"),
            "company_name": customer.get("company_name") or payload.get("company_name"),
            "phone": customer.get("phone") or payload.get("phone"),
        }
    )
    external_id = gateway.push_record("contacts", payload, str(job["idempotency_key"]))
    now_iso = _iso_now()
    db.execute(
        """
        UPDATE customers
        SET external_id = ?, last_synced_at = ?, updated_at = ?
        WHERE id = ? AND external_id IS NULL
        """,
        (external_id, now_iso, now_iso, customer["id"]),
    )
    return external_id


def _order_lines(db, order_id: int) -> list[dict]:
    rows = db.execute(
        """
        SELECT oi.sku, oi.product_name, oi.quantity, oi.unit_price, p.external_id AS item_external_id
        FROM order_items oi
        LEFT JOIN products p ON p.id = oi.product_id
        WHERE oi.order_id = ?
        ORDER BY oi.id ASC
        """,
        (order_id,),
    ).fetchall()
    return [_row_to_dict(row) for row in rows]


def handle_push_order(db, gateway: ErpGateway, job: Dict[str, object]) -> str:
    order = _row_to_dict(
        db.execute(
            """
            SELECT o.id, o.order_number, o.status, o.shipping_address, o.notes, o.total_amount,
                   o.external_id, c.external_id AS customer_external_id
            FROM orders o
            JOIN customers c ON c.id = o.customer_id
            WHERE o.id = ?
            """,
            (job["entity_id"],),
        ).fetchone()
    )
    if not order:
        raise PermanentJobError(f"order {job['entity_id']} not found")
    if order.get("external_id"):
        return str(order["external_id"])
    if order.get("status") == "cancelled":
        raise PermanentJobError(f"order {order['order_number']} was cancelled")
    if not order.get("customer_external_id"):
        raise DependencyNotReady("customer_not_synced")

    payload = {
        "order_number": order["order_number"],
        "customer_external_id": order["customer_external_id"],
        "notes": order.get("notes"),
        "shipping_address": order.get("shipping_address"),
        "lines": _order_lines(db, int(order["id"])),
    }
    idempotency_key = str(job["idempotency_key"])
    external_id = gateway.push_record("salesorders", payload, idempotency_key)
    now_iso = _iso_now()
    db.execute(
        """
        UPDATE orders
        SET external_id = ?, erp_pushed_at = ?, erp_idempotency_key = ?, updated_at = ?
        WHERE id = ? AND external_id IS NULL
        """,
        (external_id, now_iso, idempotency_key, now_iso, order["id"]),
    )
    return external_id


JOB_HANDLERS: Dict[str, Callable[[object, ErpGateway, Dict[str, object]], str]] = {
    "create_customer": handle_create_customer,
    "push_order": handle_push_order,
}
