from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from ..errors import ProductInactive, ProductNotFound

MONEY_Q = Decimal("0.01")


def q_money(v) -> Decimal:
    return Decimal(str(v if v is not None else 0)).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def fetch_product(cur, product_id) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name, barcode, sale_price, purchase_price, stock_qty, min_stock, is_active
        FROM products
        WHERE id = %s
        """,
        (product_id,),
    )
    return cur.fetchone()


def require_active_product(cur, product_id) -> dict:
    p = fetch_product(cur, product_id)
    if not p:
        raise ProductNotFound(product_id)
    if not p["is_active"]:
        raise ProductInactive(product_id, p["name"])
    return p
