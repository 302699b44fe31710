from decimal import Decimal
from typing import Optional

from ..cache.invalidation import CacheEvent
from ..config import settings
from ..errors import (
    AdjustmentNeedsJustification,
    ExcessiveStock,
    InvalidMutation,
    ManualSourceNotAllowed,
    ProductNotFound,
    StockUnchanged,
)
from ..logs import json_log
from ..orchestrator import WorkflowResult
from ..stock_ledger import apply_movement, q_qty
from .common import fetch_product, require_active_product


def update_stock(
    cur,
    *,
    product_id: int,
    qty,
    kind: str,
    user_id: int,
    note: Optional[str] = None,
    source_type: str = "adjustment",
) -> WorkflowResult:
    """
    Manual in/out movement. `set` goes through adjust_stock, which enforces the correction rules.

    Manual movements are always filed as adjustments: sales and receptions move
    stock through their own documents, so a client cannot attach a movement to one.
    """
    if kind not in {"in", "out"}:
        raise InvalidMutation(f"update_stock only handles in/out, got {kind!r}", kind=kind)
    if source_type != "adjustment":
        raise ManualSourceNotAllowed(
            "manual stock movements must be filed as adjustments",
            kind=kind,
            source_type=source_type,
        )
    p = fetch_product(cur, product_id)
    if not p:
        raise ProductNotFound(product_id)

    change, movement = apply_movement(
        cur,
        product_id,
        qty,
        kind,
        source_type="adjustment",
        user_id=user_id,
        note=note or "",
    )
    json_log(
        "info",
        "stock.updated",
        product_id=product_id,
        kind=kind,
        qty=change.qty,
        stock_before=change.before,
        stock_after=change.after,
        movement_id=movement.id,
        user_id=user_id,
    )
    return WorkflowResult(
        payload={
            "product_id": product_id,
            "kind": kind,
            "qty": change.qty,
            "stock_before": change.before,
            "stock_after": change.after,
            "movement_id": movement.id,
            "low_stock_alert": change.after <= q_qty(p["min_stock"]),
        },
        events=[CacheEvent.stock_changed([product_id], [p["barcode"]])],
    )


def change_pct(current: Decimal, new: Decimal) -> Decimal:
    if current <= 0:
        return Decimal("100")
    return (abs(new - current) / current * 100).quantize(Decimal("0.1"))


def adjust_stock(cur, *, product_id: int, new_qty, user_id: int, note: Optional[str] = None) -> WorkflowResult:
    p = require_active_product(cur, product_id)
    current = q_qty(p["stock_qty"])
    target = q_qty(new_qty)
    note = (note or "").strip()

    if target < 0:
        raise InvalidMutation("target balance must be >= 0", product_id=product_id, qty=target)
    diff = target - current
    if diff == 0:
        raise StockUnchanged(f"stock of {p['name']} is already {current}", product_id=product_id, current=current)
    if target > settings.adjust_max_stock:
        raise ExcessiveStock(
            f"stock cannot exceed {settings.adjust_max_stock} units",
            product_id=product_id,
            requested=target,
            max_stock=settings.adjust_max_stock,
        )

    pct = change_pct(current, target)
    if current > 0 and pct > settings.adjust_critical_pct and len(note) < settings.adjust_min_note_chars:
        raise AdjustmentNeedsJustification(
            f"changes above {settings.adjust_critical_pct}% need a note of at least {settings.adjust_min_note_chars} characters",
            product_id=product_id,
            change_pct=pct,
            min_note_chars=settings.adjust_min_note_chars,
        )
    if current > 0 and pct > settings.adjust_significant_pct:
        json_log(
            "warning",
            "stock.adjustment.significant",
            product_id=product_id,
            product_name=p["name"],
            stock_before=current,
            stock_after=target,
            change_pct=pct,
            user_id=user_id,
            note=note or None,
        )

    if not note:
        direction = "increase" if diff > 0 else "reduction"
        note = f"Inventory adjustment: {direction} of {abs(diff)} units ({pct}% change)"

    change, movement = apply_movement(
        cur,
        product_id,
        target,
        "set",
        source_type="adjustment",
        user_id=user_id,
        note=note,
    )
    low = change.after <= q_qty(p["min_stock"])
    json_log(
        "info",
        "stock.adjusted",
        product_id=product_id,
        stock_before=change.before,
        stock_after=change.after,
        qty=change.movement_qty,
        movement_id=movement.id,
        low_stock_alert=low,
        user_id=user_id,
    )
    return WorkflowResult(
        payload={
            "product_id": product_id,
            "product_name": p["name"],
            "stock_before": change.before,
            "stock_after": change.after,
            "difference": change.delta,
            "change_pct": change_pct(change.before, change.after),
            "movement_id": movement.id,
            "note": note,
            "low_stock_alert": low,
        },
        events=[CacheEvent.stock_changed([product_id], [p["barcode"]])],
    )
