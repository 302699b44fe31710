from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..cache.keys import KeySpace, Namespace, ttl_for
from ..cache.read_through import cached_read
from ..db import get_conn
from ..deps import get_cache, get_current_user, get_keyspace, get_orchestrator
from ..errors import ProductNotFound
from ..orchestrator import TransactionOrchestrator
from ..validation import UnitType
from ..workflows.products import create_product, set_product_active

router = APIRouter(prefix="/products", tags=["products"])

_PRODUCT_COLUMNS = """
    p.id, p.barcode, p.name, p.description, p.category_id, c.name AS category_name,
    p.purchase_price, p.sale_price, p.unit_type, p.stock_qty, p.min_stock,
    p.is_active, p.created_at, p.updated_at
"""


class ProductIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    category_id: int
    purchase_price: Decimal = Field(gt=0)
    sale_price: Decimal = Field(gt=0)
    barcode: Optional[str] = Field(default=None, max_length=50)
    description: Optional[str] = None
    unit_type: UnitType = "unit"
    min_stock: Decimal = Field(default=Decimal("0"), ge=0)
    initial_stock: Decimal = Field(default=Decimal("0"), ge=0)


def _load_product(where: str, value):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {_PRODUCT_COLUMNS}
                FROM products p
                JOIN categories c ON c.id = p.category_id
                WHERE {where}
                """,
                (value,),
            )
            return cur.fetchone()


@router.post("")
def create(data: ProductIn, user=Depends(get_current_user), orch: TransactionOrchestrator = Depends(get_orchestrator)):
    res = orch.run(create_product, user_id=user["user_id"], **data.model_dump())
    return {"product": res.payload}


@router.get("")
def list_products(
    q: Optional[str] = None,
    category_id: Optional[int] = None,
    active: Optional[bool] = True,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    cache=Depends(get_cache),
    ks: KeySpace = Depends(get_keyspace),
):
    key = ks.key(Namespace.PRODUCTS_LIST, None, q=q, category_id=category_id, active=active, page=page, page_size=page_size)

    def _load():
        where, params = ["true"], []
        if q:
            where.append("(p.name ILIKE %s OR p.barcode = %s)")
            params += [f"%{q.strip()}%", q.strip()]
        if category_id is not None:
            where.append("p.category_id = %s")
            params.append(category_id)
        if active is not None:
            where.append("p.is_active = %s")
            params.append(active)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) AS n FROM products p WHERE {' AND '.join(where)}", params)
                total = cur.fetchone()["n"]
                cur.execute(
                    f"""
                    SELECT {_PRODUCT_COLUMNS}
                    FROM products p
                    JOIN categories c ON c.id = p.category_id
                    WHERE {' AND '.join(where)}
                    ORDER BY p.name
                    LIMIT %s OFFSET %s
                    """,
                    params + [page_size, (page - 1) * page_size],
                )
                rows = cur.fetchall()
        return {"products": rows, "total": total, "page": page, "page_size": page_size}

    data, hit = cached_read(cache, key, ttl_for(Namespace.PRODUCTS_LIST), _load)
    return {**data, "from_cache": hit}


@router.get("/barcode/{barcode}")
def get_by_barcode(barcode: str, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        row = _load_product("p.barcode = %s AND p.is_active = true", barcode)
        if not row:
            raise ProductNotFound(barcode)
        return row

    data, hit = cached_read(cache, ks.key(Namespace.PRODUCT_BARCODE, barcode), ttl_for(Namespace.PRODUCT_BARCODE), _load)
    return {"product": data, "from_cache": hit}


@router.get("/{product_id}")
def get_product(product_id: int, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        row = _load_product("p.id = %s", product_id)
        if not row:
            raise ProductNotFound(product_id)
        return row

    data, hit = cached_read(cache, ks.key(Namespace.PRODUCT, product_id), ttl_for(Namespace.PRODUCT), _load)
    return {"product": data, "from_cache": hit}


@router.post("/{product_id}/deactivate")
def deactivate(product_id: int, user=Depends(get_current_user), orch: TransactionOrchestrator = Depends(get_orchestrator)):
    res = orch.run(set_product_active, product_id=product_id, active=False, user_id=user["user_id"])
    return {"product": res.payload}


@router.post("/{product_id}/activate")
def activate(product_id: int, user=Depends(get_current_user), orch: TransactionOrchestrator = Depends(get_orchestrator)):
    res = orch.run(set_product_active, product_id=product_id, active=True, user_id=user["user_id"])
    return {"product": res.payload}
