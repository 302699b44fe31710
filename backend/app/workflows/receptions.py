from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from ..cache.invalidation import CacheEvent
from ..errors import (
    BusinessRuleError,
    DocumentNotFound,
    DocumentNotMutable,
    DuplicateInvoice,
    DuplicateLineProduct,
    ProductNotFound,
    SupplierNotFound,
)
from ..logs import json_log
from ..orchestrator import WorkflowResult
from ..stock_ledger import apply_movement, q_qty
from .common import q_money, require_active_product

OLD_RECEPTION_DAYS = 7


def _fetch_reception(cur, reception_id) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, invoice_no, supplier_id, status, note
        FROM receptions
        WHERE id = %s
        """,
        (reception_id,),
    )
    return cur.fetchone()


def create_reception(
    cur,
    *,
    user_id: int,
    supplier_id: int,
    invoice_no: str,
    received_on: date,
    lines: Iterable[dict],
    note: Optional[str] = None,
    today: Optional[date] = None,
) -> WorkflowResult:
    invoice_no = (invoice_no or "").strip()
    today = today or date.today()
    if received_on < today - timedelta(days=OLD_RECEPTION_DAYS):
        # Allowed; logged for review.
        json_log(
            "warning",
            "reception.old_date",
            received_on=received_on,
            days_old=(today - received_on).days,
            supplier_id=supplier_id,
            invoice_no=invoice_no,
            user_id=user_id,
        )

    cur.execute("SELECT id, name, is_active FROM suppliers WHERE id = %s", (supplier_id,))
    sup = cur.fetchone()
    if not sup or not sup["is_active"]:
        raise SupplierNotFound(supplier_id)

    cur.execute(
        """
        SELECT 1
        FROM receptions
        WHERE supplier_id = %s AND invoice_no = %s
        LIMIT 1
        """,
        (supplier_id, invoice_no),
    )
    if cur.fetchone():
        raise DuplicateInvoice(
            f"invoice {invoice_no} from supplier {sup['name']} was already received",
            supplier_id=supplier_id,
            invoice_no=invoice_no,
        )

    validated = []
    seen = set()
    for line in lines or []:
        pid = line["product_id"]
        if pid in seen:
            raise DuplicateLineProduct(f"product {pid} appears in more than one line", product_id=pid)
        seen.add(pid)
        require_active_product(cur, pid)
        qty = q_qty(line["qty"])
        unit_price = q_money(line["unit_price"])
        if qty <= 0 or unit_price <= 0:
            raise BusinessRuleError("line qty and unit_price must be > 0", product_id=pid)
        validated.append({"product_id": pid, "qty": qty, "unit_price": unit_price, "subtotal": q_money(qty * unit_price)})
    if not validated:
        raise BusinessRuleError("a reception needs at least one line")

    total = q_money(sum((l["subtotal"] for l in validated), Decimal("0")))
    cur.execute(
        """
        INSERT INTO receptions (invoice_no, supplier_id, user_id, received_on, total, note, status)
        VALUES (%s, %s, %s, %s, %s, %s, 'pending')
        RETURNING id, created_at
        """,
        (invoice_no, supplier_id, user_id, received_on, total, (note or "").strip() or None),
    )
    rec = cur.fetchone()
    for l in validated:
        cur.execute(
            """
            INSERT INTO reception_lines (reception_id, product_id, qty, unit_price, subtotal)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (rec["id"], l["product_id"], l["qty"], l["unit_price"], l["subtotal"]),
        )
        l["id"] = cur.fetchone()["id"]

    json_log(
        "info",
        "reception.created",
        reception_id=rec["id"],
        invoice_no=invoice_no,
        supplier_id=supplier_id,
        total=total,
        lines=len(validated),
        user_id=user_id,
    )
    return WorkflowResult(
        payload={
            "id": rec["id"],
            "invoice_no": invoice_no,
            "supplier_id": supplier_id,
            "received_on": received_on,
            "status": "pending",
            "total": total,
            "created_at": rec["created_at"],
            "lines": validated,
        },
        events=[CacheEvent.document_created("reception", rec["id"])],
    )


def process_reception(
    cur,
    *,
    reception_id: int,
    user_id: int,
    note: Optional[str] = None,
    update_prices: bool = True,
) -> WorkflowResult:
    rec = _fetch_reception(cur, reception_id)
    if not rec:
        raise DocumentNotFound("reception", reception_id)
    if rec["status"] != "pending":
        raise DocumentNotMutable("reception", reception_id, rec["status"], "pending")

    cur.execute(
        """
        SELECT l.id, l.product_id, l.qty, l.unit_price, p.name, p.barcode, p.is_active
        FROM reception_lines l
        LEFT JOIN products p ON p.id = l.product_id
        WHERE l.reception_id = %s
        ORDER BY l.product_id, l.id
        """,
        (reception_id,),
    )
    lines = cur.fetchall()
    if not lines:
        raise BusinessRuleError("reception has no lines", reception_id=reception_id)

    warnings = []
    advisory = ""
    applied = []
    base_note = (note or "").strip()
    for l in lines:
        pid = l["product_id"]
        if l["name"] is None:
            raise ProductNotFound(pid)
        if not l["is_active"]:
            # Stock lands anyway; the document gets flagged.
            json_log(
                "warning",
                "reception.inactive_product",
                reception_id=reception_id,
                invoice_no=rec["invoice_no"],
                product_id=pid,
                product_name=l["name"],
                qty=l["qty"],
                user_id=user_id,
            )
            warnings.append({"product_id": pid, "product_name": l["name"], "qty": q_qty(l["qty"])})
            advisory += f" [WARNING: product \"{l['name']}\" received while inactive]"

        change, movement = apply_movement(
            cur,
            pid,
            l["qty"],
            "in",
            source_type="reception",
            source_id=reception_id,
            user_id=user_id,
            note=base_note or f"Reception {rec['invoice_no']} - supplier {rec['supplier_id']}",
        )
        if update_prices:
            cur.execute(
                """
                UPDATE products
                SET purchase_price = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (q_money(l["unit_price"]), pid),
            )
        applied.append(
            {
                "product_id": pid,
                "qty": q_qty(l["qty"]),
                "stock_before": change.before,
                "stock_after": change.after,
                "movement_id": movement.id,
            }
        )

    final_note = rec["note"]
    if advisory:
        final_note = ((rec["note"] or "") + advisory).strip()

    cur.execute(
        """
        UPDATE receptions
        SET status = 'processed',
            processed_at = now(),
            processed_by_user_id = %s,
            note = %s
        WHERE id = %s
          AND status = 'pending'
        RETURNING id, processed_at
        """,
        (user_id, final_note, reception_id),
    )
    row = cur.fetchone()
    if not row:
        raise DocumentNotMutable("reception", reception_id, "processed", "pending")

    json_log(
        "info",
        "reception.processed",
        reception_id=reception_id,
        invoice_no=rec["invoice_no"],
        lines=len(applied),
        inactive_products=len(warnings),
        user_id=user_id,
    )
    return WorkflowResult(
        payload={
            "id": reception_id,
            "invoice_no": rec["invoice_no"],
            "status": "processed",
            "processed_at": row["processed_at"],
            "note": final_note,
            "lines": applied,
            "warnings": {"inactive_products": warnings} if warnings else None,
        },
        events=[
            CacheEvent.stock_changed([l["product_id"] for l in lines], [l["barcode"] for l in lines]),
            CacheEvent.document_state_changed("reception", reception_id),
        ],
    )


def cancel_reception(cur, *, reception_id: int, user_id: int) -> WorkflowResult:
    cur.execute(
        """
        UPDATE receptions
        SET status = 'cancelled',
            cancelled_at = now(),
            cancelled_by_user_id = %s
        WHERE id = %s
          AND status = 'pending'
        RETURNING id, invoice_no, cancelled_at
        """,
        (user_id, reception_id),
    )
    row = cur.fetchone()
    if not row:
        rec = _fetch_reception(cur, reception_id)
        if not rec:
            raise DocumentNotFound("reception", reception_id)
        raise DocumentNotMutable("reception", reception_id, rec["status"], "pending")

    json_log("info", "reception.cancelled", reception_id=reception_id, user_id=user_id)
    return WorkflowResult(
        payload={"id": reception_id, "invoice_no": row["invoice_no"], "status": "cancelled", "cancelled_at": row["cancelled_at"]},
        events=[CacheEvent.document_state_changed("reception", reception_id)],
    )
