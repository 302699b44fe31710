from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from psycopg import errors as pg_errors

from ..cache.invalidation import CacheEvent
from ..config import settings
from ..errors import (
    AllocatorExhausted,
    BusinessRuleError,
    DocumentNotFound,
    DocumentNotMutable,
    DuplicateLineProduct,
    ReversalWindowExceeded,
)
from ..logs import json_log
from ..orchestrator import WorkflowResult
from ..sale_numbers import allocate_unique, generate_sale_number, sale_number_taken
from ..stock_ledger import apply_movement, q_qty
from .common import q_money, require_active_product


def _validate_lines(cur, lines: Iterable[dict]) -> list:
    validated = []
    seen = set()
    for line in lines or []:
        pid = line["product_id"]
        if pid in seen:
            raise DuplicateLineProduct(f"product {pid} appears in more than one line", product_id=pid)
        seen.add(pid)
        p = require_active_product(cur, pid)
        qty = q_qty(line["qty"])
        if qty <= 0:
            raise BusinessRuleError("line qty must be > 0", product_id=pid, qty=qty)
        unit_price = q_money(line.get("unit_price") if line.get("unit_price") is not None else p["sale_price"])
        validated.append(
            {
                "product_id": pid,
                "product_name": p["name"],
                "barcode": p.get("barcode"),
                "qty": qty,
                "unit_price": unit_price,
                "subtotal": q_money(qty * unit_price),
            }
        )
    if not validated:
        raise BusinessRuleError("a sale needs at least one line")
    return validated


def _insert_sale_header(cur, *, user_id: int, total: Decimal, payment_method: str, max_attempts: int) -> dict:
    """
    Allocate a sale number and insert the header under one attempt budget.

    The pre-check in `allocate_unique` and the UNIQUE(sale_no) constraint both
    spend from the same budget: a number that passed the check but lost the
    insert race counts as a collision too.
    """
    used = 0

    def _taken(candidate: str) -> bool:
        nonlocal used
        used += 1
        return sale_number_taken(cur, candidate)

    while True:
        remaining = max_attempts - used
        if remaining <= 0:
            json_log("error", "sale_number.exhausted", max_attempts=max_attempts, stage="insert")
            raise AllocatorExhausted(
                f"could not allocate a unique sale number after {max_attempts} attempts",
                attempts=max_attempts,
            )
        sale_no = allocate_unique(_taken, generate_sale_number, max_attempts=remaining)
        try:
            with cur.connection.transaction():
                cur.execute(
                    """
                    INSERT INTO sales (sale_no, user_id, total, payment_method, status)
                    VALUES (%s, %s, %s, %s, 'active')
                    RETURNING id, sale_no, sold_at
                    """,
                    (sale_no, user_id, total, payment_method),
                )
                return cur.fetchone()
        except pg_errors.UniqueViolation:
            json_log("warning", "sale_number.collision", candidate=sale_no, attempt=used, stage="insert")


def create_sale(cur, *, user_id: int, lines: Iterable[dict], payment_method: str = "cash") -> WorkflowResult:
    validated = _validate_lines(cur, lines)
    total = q_money(sum((l["subtotal"] for l in validated), Decimal("0")))

    header = _insert_sale_header(
        cur,
        user_id=user_id,
        total=total,
        payment_method=payment_method,
        max_attempts=settings.sale_number_max_attempts,
    )
    sale_id, sale_no = header["id"], header["sale_no"]

    line_ids = []
    for l in validated:
        cur.execute(
            """
            INSERT INTO sale_lines (sale_id, product_id, qty, unit_price, subtotal)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (sale_id, l["product_id"], l["qty"], l["unit_price"], l["subtotal"]),
        )
        line_ids.append(cur.fetchone()["id"])

    # Lock order: product_id ascending, in every multi-line workflow.
    applied = {}
    for l in sorted(validated, key=lambda l: l["product_id"]):
        applied[l["product_id"]] = apply_movement(
            cur,
            l["product_id"],
            l["qty"],
            "out",
            source_type="sale",
            source_id=sale_id,
            user_id=user_id,
            note=f"Sale {sale_no} - {l['product_name']}",
        )

    out_lines = []
    for l, line_id in zip(validated, line_ids):
        change, movement = applied[l["product_id"]]
        out_lines.append(
            {
                "id": line_id,
                "product_id": l["product_id"],
                "qty": l["qty"],
                "unit_price": l["unit_price"],
                "subtotal": l["subtotal"],
                "stock_before": change.before,
                "stock_after": change.after,
                "movement_id": movement.id,
            }
        )

    json_log("info", "sale.created", sale_id=sale_id, sale_no=sale_no, total=total, lines=len(out_lines), user_id=user_id)
    return WorkflowResult(
        payload={
            "id": sale_id,
            "sale_no": sale_no,
            "status": "active",
            "total": total,
            "payment_method": payment_method,
            "sold_at": header["sold_at"],
            "lines": out_lines,
        },
        events=[
            CacheEvent.stock_changed([l["product_id"] for l in validated], [l["barcode"] for l in validated]),
            CacheEvent.document_created("sale", sale_id),
        ],
    )


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def anul_sale(
    cur,
    *,
    sale_id: int,
    user_id: int,
    reason: str,
    now: Optional[datetime] = None,
    window_hours: Optional[int] = None,
) -> WorkflowResult:
    cur.execute(
        """
        SELECT id, sale_no, status, sold_at
        FROM sales
        WHERE id = %s
        """,
        (sale_id,),
    )
    sale = cur.fetchone()
    if not sale:
        raise DocumentNotFound("sale", sale_id)
    if sale["status"] != "active":
        raise DocumentNotMutable("sale", sale_id, sale["status"], "active")

    now = _as_utc(now or datetime.now(timezone.utc))
    window_hours = window_hours if window_hours is not None else settings.sale_anul_window_hours
    sold_at = _as_utc(sale["sold_at"])
    if now - sold_at > timedelta(hours=window_hours):
        raise ReversalWindowExceeded(
            f"sale {sale['sale_no']} is older than {window_hours}h and can no longer be anulled",
            sale_id=sale_id,
            sold_at=sold_at.isoformat(),
            window_hours=window_hours,
        )

    cur.execute(
        """
        SELECT l.product_id, l.qty, p.barcode
        FROM sale_lines l
        LEFT JOIN products p ON p.id = l.product_id
        WHERE l.sale_id = %s
        ORDER BY l.product_id, l.id
        """,
        (sale_id,),
    )
    lines = cur.fetchall()

    reason = (reason or "").strip()
    restored = []
    for l in lines:
        change, movement = apply_movement(
            cur,
            l["product_id"],
            l["qty"],
            "in",
            source_type="sale",
            source_id=sale_id,
            user_id=user_id,
            note=f"Anul of sale {sale['sale_no']}: {reason}",
        )
        restored.append(
            {
                "product_id": l["product_id"],
                "qty": q_qty(l["qty"]),
                "stock_before": change.before,
                "stock_after": change.after,
                "movement_id": movement.id,
            }
        )

    # Conditional transition: a concurrent anul that got here first leaves zero rows.
    cur.execute(
        """
        UPDATE sales
        SET status = 'anulled',
            anulled_at = now(),
            anulled_by_user_id = %s,
            anul_reason = %s
        WHERE id = %s
          AND status = 'active'
        RETURNING id, anulled_at
        """,
        (user_id, reason or None, sale_id),
    )
    row = cur.fetchone()
    if not row:
        raise DocumentNotMutable("sale", sale_id, "anulled", "active")

    json_log("info", "sale.anulled", sale_id=sale_id, sale_no=sale["sale_no"], lines=len(restored), user_id=user_id)
    return WorkflowResult(
        payload={
            "id": sale_id,
            "sale_no": sale["sale_no"],
            "status": "anulled",
            "anulled_at": row["anulled_at"],
            "lines": restored,
        },
        events=[
            CacheEvent.stock_changed([l["product_id"] for l in lines], [l.get("barcode") for l in lines]),
            CacheEvent.document_state_changed("sale", sale_id),
        ],
    )
