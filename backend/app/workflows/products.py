from typing import Optional

from ..cache.invalidation import CacheEvent
from ..errors import CategoryNotFound, DuplicateProduct, ProductNotFound
from ..logs import json_log
from ..orchestrator import WorkflowResult
from ..stock_ledger import apply_movement, q_qty
from .common import q_money

INITIAL_STOCK_NOTE = "Initial stock on product creation"


def create_product(
    cur,
    *,
    user_id: int,
    name: str,
    category_id: int,
    purchase_price,
    sale_price,
    barcode: Optional[str] = None,
    description: Optional[str] = None,
    unit_type: str = "unit",
    min_stock=0,
    initial_stock=0,
) -> WorkflowResult:
    """
    Insert a product with a zero balance, then book any initial stock as an
    `in` adjustment so the ledger replays to the stored balance from day one.
    """
    name = (name or "").strip()
    barcode = (barcode or "").strip() or None

    cur.execute("SELECT id FROM categories WHERE id = %s", (category_id,))
    if not cur.fetchone():
        raise CategoryNotFound(category_id)

    cur.execute("SELECT id FROM products WHERE lower(name) = lower(%s) LIMIT 1", (name,))
    if cur.fetchone():
        raise DuplicateProduct(f"a product named {name!r} already exists", name=name)
    if barcode:
        cur.execute("SELECT id FROM products WHERE barcode = %s LIMIT 1", (barcode,))
        if cur.fetchone():
            raise DuplicateProduct(f"barcode {barcode} is already in use", barcode=barcode)

    cur.execute(
        """
        INSERT INTO products
          (barcode, name, description, category_id, purchase_price, sale_price, unit_type, min_stock)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, name, barcode, stock_qty
        """,
        (
            barcode,
            name,
            (description or "").strip() or None,
            category_id,
            q_money(purchase_price),
            q_money(sale_price),
            unit_type,
            q_qty(min_stock),
        ),
    )
    p = cur.fetchone()

    stock = q_qty(p["stock_qty"])
    movement_id = None
    events = [CacheEvent.catalog_changed([p["id"]], [barcode])]
    if q_qty(initial_stock) > 0:
        change, movement = apply_movement(
            cur,
            p["id"],
            initial_stock,
            "in",
            source_type="adjustment",
            user_id=user_id,
            note=INITIAL_STOCK_NOTE,
        )
        stock, movement_id = change.after, movement.id
        events.append(CacheEvent.stock_changed([p["id"]], [barcode]))

    json_log("info", "product.created", product_id=p["id"], name=name, initial_stock=stock, user_id=user_id)
    return WorkflowResult(
        payload={
            "id": p["id"],
            "name": p["name"],
            "barcode": p["barcode"],
            "category_id": category_id,
            "stock_qty": stock,
            "is_active": True,
            "initial_movement_id": movement_id,
        },
        events=events,
    )


def set_product_active(cur, *, product_id: int, active: bool, user_id: int) -> WorkflowResult:
    cur.execute(
        """
        UPDATE products
        SET is_active = %s,
            updated_at = now()
        WHERE id = %s
        RETURNING id, name, barcode, is_active, stock_qty
        """,
        (bool(active), product_id),
    )
    row = cur.fetchone()
    if not row:
        raise ProductNotFound(product_id)
    json_log("info", "product.activation_changed", product_id=product_id, is_active=bool(active), user_id=user_id)
    return WorkflowResult(
        payload={
            "id": row["id"],
            "name": row["name"],
            "is_active": row["is_active"],
            "stock_qty": q_qty(row["stock_qty"]),
        },
        events=[CacheEvent.catalog_changed([product_id], [row["barcode"]])],
    )
