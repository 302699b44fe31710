from fastapi import APIRouter, Depends

from ..cache.keys import KeySpace, Namespace, ttl_for
from ..cache.read_through import cached_read
from ..db import get_conn
from ..deps import get_cache, get_keyspace
from ..errors import CategoryNotFound

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("")
def list_categories(active: bool = True, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT c.id, c.name, c.description, c.is_active,
                           COUNT(p.id) AS products,
                           COALESCE(SUM(p.stock_qty), 0) AS stock_qty,
                           COALESCE(SUM(p.stock_qty * p.purchase_price), 0) AS stock_value,
                           COUNT(p.id) FILTER (WHERE p.stock_qty <= p.min_stock) AS low_stock_products
                    FROM categories c
                    LEFT JOIN products p ON p.category_id = c.id AND p.is_active = true
                    WHERE c.is_active = %s
                    GROUP BY c.id, c.name, c.description, c.is_active
                    ORDER BY c.name
                    """,
                    (active,),
                )
                return {"categories": cur.fetchall()}

    data, hit = cached_read(cache, ks.key(Namespace.CATEGORIES_LIST, None, active=active), ttl_for(Namespace.CATEGORIES_LIST), _load)
    return {**data, "from_cache": hit}


@router.get("/stats")
def category_stats(cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COUNT(*) FILTER (WHERE c.is_active) AS active_categories,
                           COUNT(*) FILTER (WHERE NOT c.is_active) AS inactive_categories,
                           COUNT(*) FILTER (
                             WHERE NOT EXISTS (SELECT 1 FROM products p WHERE p.category_id = c.id AND p.is_active)
                           ) AS empty_categories
                    FROM categories c
                    """
                )
                return {"stats": cur.fetchone()}

    data, hit = cached_read(cache, ks.key(Namespace.CATEGORY_STATS), ttl_for(Namespace.CATEGORY_STATS), _load)
    return {**data, "from_cache": hit}


@router.get("/{category_id}")
def get_category(category_id: int, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name, description, is_active FROM categories WHERE id = %s",
                    (category_id,),
                )
                cat = cur.fetchone()
                if not cat:
                    raise CategoryNotFound(category_id)
                cur.execute(
                    """
                    SELECT id, barcode, name, sale_price, stock_qty, min_stock, is_active
                    FROM products
                    WHERE category_id = %s
                    ORDER BY name
                    """,
                    (category_id,),
                )
                return {"category": cat, "products": cur.fetchall()}

    data, hit = cached_read(cache, ks.key(Namespace.CATEGORY, category_id), ttl_for(Namespace.CATEGORY), _load)
    return {**data, "from_cache": hit}
