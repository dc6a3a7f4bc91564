from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable


MERGE_CREATED = "created"
MERGE_UPDATED = "updated"
MERGE_DELISTED = "delisted"
MERGE_SKIPPED = "skipped"

PRODUCT_ERP_FIELDS = (
    "sku",
    "name",
    "description",
    "category",
    "subcategory",
    "brand",
    "tags",
    "base_price",
    "compare_at_price",
    "min_order_quantity",
    "case_pack_size",
    "stock_quantity",
    "low_stock_threshold",
    "erp_status",
    "is_online",
    "delisted",
    "erp_modified_at",
)

CUSTOMER_ERP_FIELDS = (
    "company_name",
    "contact_name",
    "phone",
    "erp_status",
    "erp_is_active",
    "delisted",
    "erp_modified_at",
)

_logger = logging.getLogger("app")


def _iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _row_to_dict(row) -> Dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    return {key: row[key] for key in row.keys()}


def _same(stored: Any, incoming: Any) -> bool:
    if stored is None or incoming is None:
        return stored is None and incoming is None
    numeric = (int, float)
    if isinstance(stored, numeric) or isinstance(incoming, numeric):
        try:
            return abs(float(stored) - float(incoming)) < 1e-9
        except (TypeError, ValueError):
            return False
    return str(stored) == str(incoming)


def _changed_fields(existing: Dict[str, Any], mapped: Dict[str, Any], fields: Iterable[str]) -> list[str]:
    return [field for field in fields if not _same(existing.get(field), mapped.get(field))]


def _merge_outcome(existing: Dict[str, Any], mapped: Dict[str, Any]) -> str:
    if int(mapped.get("delisted") or 0) and not int(existing.get("delisted") or 0):
        return MERGE_DELISTED
    return MERGE_UPDATED


def _units_sold(db, external_id: str) -> int:
    row = db.execute(
        "SELECT COALESCE(SUM(quantity), 0) AS total FROM erp_invoice_lines WHERE item_external_id = ?",
        (external_id,),
    ).fetchone()
    return int(row["total"] or 0) if row else 0


def merge_product(db, mapped: Dict[str, Any]) -> str:
    """Upsert one mapped ERP item; local-only columns are never touched."""
    now_iso = _iso_now()
    existing = _row_to_dict(
        db.execute("SELECT * FROM products WHERE external_id = ?", (mapped["external_id"],)).fetchone()
    )
    if not existing:
        columns = ["external_id", *PRODUCT_ERP_FIELDS, "units_sold", "last_synced_at", "created_at", "updated_at"]
        values = [mapped["external_id"], *(mapped.get(field) for field in PRODUCT_ERP_FIELDS)]
        values.extend([_units_sold(db, mapped["external_id"]), now_iso, now_iso, now_iso])
        db.execute(
            f"INSERT INTO products ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            tuple(values),
        )
        return MERGE_CREATED

    changed = _changed_fields(existing, mapped, PRODUCT_ERP_FIELDS)
    if not changed:
        db.execute("UPDATE products SET last_synced_at = ? WHERE id = ?", (now_iso, existing["id"]))
        return MERGE_SKIPPED

    assignments = ", ".join(f"{field} = ?" for field in PRODUCT_ERP_FIELDS)
    db.execute(
        f"UPDATE products SET {assignments}, last_synced_at = ?, updated_at = ? WHERE id = ?",
        (*(mapped.get(field) for field in PRODUCT_ERP_FIELDS), now_iso, now_iso, existing["id"]),
    )
    return _merge_outcome(existing, mapped)


def delist_product(db, external_id: str) -> str:
    now_iso = _iso_now()
    cursor = db.execute(
        """
        UPDATE products
        SET delisted = 1, last_synced_at = ?, updated_at = ?
        WHERE external_id = ? AND delisted = 0
        """,
        (now_iso, now_iso, external_id),
    )
    if int(getattr(cursor, "rowcount", 0) or 0) > 0:
        return MERGE_DELISTED
    return MERGE_SKIPPED


def sweep_unseen_products(db, seen_external_ids: set[str]) -> int:
    """Delist listed ERP products that a complete full run did not return."""
    rows = db.execute(
        "SELECT id, external_id FROM products WHERE external_id IS NOT NULL AND delisted = 0"
    ).fetchall()
    now_iso = _iso_now()
    swept = 0
    for row in rows:
        if str(row["external_id"]) in seen_external_ids:
            continue
        db.execute(
            "UPDATE products SET delisted = 1, updated_at = ? WHERE id = ? AND delisted = 0",
            (now_iso, row["id"]),
        )
        swept += 1
    return swept


def _bind_customer(db, customer_id: int, mapped: Dict[str, Any], now_iso: str) -> None:
    assignments = ", ".join(f"{field} = ?" for field in CUSTOMER_ERP_FIELDS)
    db.execute(
        f"""
        UPDATE customers
        SET external_id = ?, {assignments}, last_synced_at = ?, erp_last_checked_at = ?, updated_at = ?
        WHERE id = ? AND external_id IS NULL
        """,
        (
            mapped["external_id"],
            *(mapped.get(field) for field in CUSTOMER_ERP_FIELDS),
            now_iso,
            now_iso,
            now_iso,
            customer_id,
        ),
    )


def _customer_for_storefront_ref(db, storefront_ref: str | None) -> Dict[str, Any]:
    """Local customer whose create job pushed the contact carrying ``storefront_ref``."""
    if not storefront_ref:
        return {}
    return _row_to_dict(
        db.execute(
            """
            SELECT c.id, c.external_id
            FROM jobs j
            JOIN customers c ON c.id = j.entity_id
            WHERE j.idempotency_key = ? AND j.entity_type = 'customer'
            """,
            (storefront_ref,),
        ).fetchone()
    )


def _customers_by_email(db, email: str) -> list[Dict[str, Any]]:
    rows = db.execute(
        "SELECT id, email, external_id FROM customers WHERE LOWER(email) = ?",
        (email.lower(),),
    ).fetchall()
    return [_row_to_dict(row) for row in rows]


def merge_customer(db, mapped: Dict[str, Any]) -> str:
    """Upsert one mapped ERP contact.

    Unbound contacts are attached to a local customer only through the storefront
    reference written at push time or an exact primary-email match.
    """
    now_iso = _iso_now()
    external_id = mapped["external_id"]
    existing = _row_to_dict(db.execute("SELECT * FROM customers WHERE external_id = ?", (external_id,)).fetchone())
    if existing:
        changed = _changed_fields(existing, mapped, CUSTOMER_ERP_FIELDS)
        if not changed:
            db.execute(
                "UPDATE customers SET last_synced_at = ?, erp_last_checked_at = ? WHERE id = ?",
                (now_iso, now_iso, existing["id"]),
            )
            return MERGE_SKIPPED
        assignments = ", ".join(f"{field} = ?" for field in CUSTOMER_ERP_FIELDS)
        db.execute(
            f"""
            UPDATE customers
            SET {assignments}, last_synced_at = ?, erp_last_checked_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (*(mapped.get(field) for field in CUSTOMER_ERP_FIELDS), now_iso, now_iso, now_iso, existing["id"]),
        )
        return _merge_outcome(existing, mapped)

    pushed = _customer_for_storefront_ref(db, mapped.get("storefront_ref"))
    if pushed and not pushed.get("external_id"):
        _bind_customer(db, int(pushed["id"]), mapped, now_iso)
        return MERGE_UPDATED

    email = mapped.get("primary_email")
    if email:
        matches = _customers_by_email(db, email)
        unbound = [row for row in matches if not row.get("external_id")]
        if len(unbound) == 1:
            _bind_customer(db, int(unbound[0]["id"]), mapped, now_iso)
            return MERGE_UPDATED
        if matches:
            _logger.warning(
                "contact_email_conflict",
                extra={"external_id": external_id, "email": email, "bound_to": [row.get("external_id") for row in matches]},
            )
            return MERGE_SKIPPED

    for other in mapped.get("secondary_emails") or []:
        if _customers_by_email(db, other):
            _logger.warning(
                "contact_binding_needs_review",
                extra={"external_id": external_id, "matched_email": other, "primary_email": email},
            )
            return MERGE_SKIPPED

    new_email = email or (mapped.get("secondary_emails") or [None])[0]
    columns = ["email", "external_id", *CUSTOMER_ERP_FIELDS, "storefront_status", "price_tier"]
    values = [new_email, external_id, *(mapped.get(field) for field in CUSTOMER_ERP_FIELDS)]
    values.extend(["pending_approval", mapped.get("price_tier")])
    columns.extend(["last_synced_at", "erp_last_checked_at", "created_at", "updated_at"])
    values.extend([now_iso, now_iso, now_iso, now_iso])
    db.execute(
        f"INSERT INTO customers ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        tuple(values),
    )
    return MERGE_CREATED


def delist_customer(db, external_id: str) -> str:
    now_iso = _iso_now()
    cursor = db.execute(
        """
        UPDATE customers
        SET delisted = 1, erp_is_active = 0, erp_status = 'deleted', last_synced_at = ?, updated_at = ?
        WHERE external_id = ? AND delisted = 0
        """,
        (now_iso, now_iso, external_id),
    )
    if int(getattr(cursor, "rowcount", 0) or 0) > 0:
        return MERGE_DELISTED
    return MERGE_SKIPPED
