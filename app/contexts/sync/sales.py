from __future__ import annotations

from typing import Any, Dict

from app.contexts.erp.domain.gateway import ErpValidationError
from app.contexts.sync.repositories import MERGE_CREATED, MERGE_SKIPPED, MERGE_UPDATED


_VOID_STATUSES = {"void", "deleted"}


def _invoice_lines(payload: Dict[str, Any]) -> list[tuple[int, str | None, int]]:
    line_items = payload.get("line_items")
    if not isinstance(line_items, list):
        return []
    lines = []
    for index, line in enumerate(line_items, start=1):
        if not isinstance(line, dict):
            continue
        item_id = str(line.get("item_id") or "").strip() or None
        try:
            quantity = int(float(line.get("quantity") or 0))
        except (TypeError, ValueError) as exc:
            raise ErpValidationError(f"invalid quantity on line {index}") from exc
        lines.append((index, item_id, quantity))
    return lines


def _recount_units_sold(db, item_external_ids: set[str]) -> None:
    for item_external_id in sorted(item_external_ids):
        db.execute(
            """
            UPDATE products
            SET units_sold = (
                SELECT COALESCE(SUM(quantity), 0)
                FROM erp_invoice_lines
                WHERE item_external_id = ?
            )
            WHERE external_id = ?
            """,
            (item_external_id, item_external_id),
        )


def is_void_invoice(payload: Dict[str, Any]) -> bool:
    return str((payload or {}).get("status") or "").strip().lower() in _VOID_STATUSES


def has_line_items(payload: Dict[str, Any]) -> bool:
    return isinstance((payload or {}).get("line_items"), list)


def aggregate_invoice(db, payload: Dict[str, Any], *, removed: bool = False) -> str:
    """Replace the stored lines of one invoice and refresh ``units_sold`` of the items it touches.

    A header without ``line_items`` leaves the stored lines alone; only a
    void or removed invoice clears them.
    """
    invoice_id = str((payload or {}).get("invoice_id") or "").strip()
    if not invoice_id:
        raise ErpValidationError("invoice without id")

    cleared = removed or is_void_invoice(payload)
    if not cleared and not has_line_items(payload):
        return MERGE_SKIPPED
    lines = [] if cleared else _invoice_lines(payload)
    invoice_date = str(payload.get("date") or "").strip() or None

    previous = [
        (int(row["line_no"]), row["item_external_id"], int(row["quantity"]))
        for row in db.execute(
            """
            SELECT line_no, item_external_id, quantity
            FROM erp_invoice_lines
            WHERE invoice_id = ?
            ORDER BY line_no ASC
            """,
            (invoice_id,),
        ).fetchall()
    ]
    if previous == lines:
        return MERGE_SKIPPED

    db.execute("DELETE FROM erp_invoice_lines WHERE invoice_id = ?", (invoice_id,))
    for line_no, item_external_id, quantity in lines:
        db.execute(
            """
            INSERT INTO erp_invoice_lines (invoice_id, line_no, item_external_id, quantity, invoice_date)
            VALUES (?, ?, ?, ?, ?)
            """,
            (invoice_id, line_no, item_external_id, quantity, invoice_date),
        )

    affected = {item for _line_no, item, _quantity in previous + lines if item}
    _recount_units_sold(db, affected)
    return MERGE_UPDATED if previous else MERGE_CREATED


def top_sellers(db, limit: int = 10) -> list[Dict[str, Any]]:
    rows = db.execute(
        """
        SELECT id, external_id, sku, name, units_sold
        FROM products
        WHERE delisted = 0 AND units_sold > 0
        ORDER BY units_sold DESC, id ASC
        LIMIT ?
        """,
        (max(1, int(limit)),),
    ).fetchall()
    return [dict(row) if isinstance(row, dict) else {key: row[key] for key in row.keys()} for row in rows]
