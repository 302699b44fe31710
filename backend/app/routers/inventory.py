from datetime import date
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
from ..reconciliation import reconcile_all, reconcile_product
from ..validation import ManualMovementKind, ManualSourceKind, MovementKind, SourceKind
from ..workflows.inventory import adjust_stock, update_stock

router = APIRouter(prefix="/inventory", tags=["inventory"])


class StockUpdateIn(BaseModel):
    qty: Decimal = Field(gt=0)
    kind: ManualMovementKind
    note: Optional[str] = Field(default=None, max_length=500)
    source_type: ManualSourceKind = "adjustment"


class StockAdjustIn(BaseModel):
    new_qty: Decimal = Field(ge=0)
    note: Optional[str] = Field(default=None, max_length=500)


def _cached(cache, ks: KeySpace, ns: Namespace, loader, scope=None, **params):
    data, hit = cached_read(cache, ks.key(ns, scope, **params), ttl_for(ns), loader)
    return {**data, "from_cache": hit}


def _fetchall(sql: str, params=()):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()


def _fetchone(sql: str, params=()):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()


@router.get("/movements")
def list_movements(
    product_id: Optional[int] = None,
    kind: Optional[MovementKind] = None,
    source_type: Optional[SourceKind] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    cache=Depends(get_cache),
    ks: KeySpace = Depends(get_keyspace),
):
    def _load():
        where, params = ["true"], []
        if product_id is not None:
            where.append("m.product_id = %s")
            params.append(product_id)
        if kind:
            where.append("m.movement_type = %s::movement_type")
            params.append(kind)
        if source_type:
            where.append("m.source_type = %s::movement_source")
            params.append(source_type)
        if start_date:
            where.append("m.created_at >= %s")
            params.append(start_date)
        if end_date:
            where.append("m.created_at < (%s::date + 1)")
            params.append(end_date)
        rows = _fetchall(
            f"""
            SELECT m.id, m.product_id, p.name AS product_name, m.movement_type, m.qty,
                   m.stock_before, m.stock_after, m.source_type, m.source_id,
                   m.user_id, m.note, m.created_at
            FROM stock_movements m
            JOIN products p ON p.id = m.product_id
            WHERE {' AND '.join(where)}
            ORDER BY m.created_at DESC, m.id DESC
            LIMIT %s OFFSET %s
            """,
            params + [limit, offset],
        )
        return {"movements": rows}

    return _cached(
        cache, ks, Namespace.MOVEMENTS_LIST, _load,
        product_id=product_id, kind=kind, source_type=source_type,
        start_date=start_date, end_date=end_date, limit=limit, offset=offset,
    )


@router.get("/low-stock")
def low_stock(cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        rows = _fetchall(
            """
            SELECT p.id, p.barcode, p.name, p.stock_qty, p.min_stock, c.name AS category_name
            FROM products p
            JOIN categories c ON c.id = p.category_id
            WHERE p.is_active = true
              AND p.stock_qty <= p.min_stock
            ORDER BY (p.stock_qty - p.min_stock), p.name
            """
        )
        return {"products": rows}

    return _cached(cache, ks, Namespace.INVENTORY_LOW_STOCK, _load)


@router.get("/alerts")
def alerts(cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        rows = _fetchall(
            """
            SELECT p.id, p.name, p.stock_qty, p.min_stock,
                   CASE WHEN p.stock_qty = 0 THEN 'out_of_stock' ELSE 'low_stock' END AS alert
            FROM products p
            WHERE p.is_active = true
              AND p.stock_qty <= p.min_stock
            ORDER BY p.stock_qty, p.name
            """
        )
        return {
            "alerts": rows,
            "out_of_stock": sum(1 for r in rows if r["alert"] == "out_of_stock"),
            "low_stock": sum(1 for r in rows if r["alert"] == "low_stock"),
        }

    return _cached(cache, ks, Namespace.INVENTORY_ALERTS, _load)


@router.get("/summary")
def summary(cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        row = _fetchone(
            """
            SELECT COUNT(*) AS products,
                   COUNT(*) FILTER (WHERE stock_qty = 0) AS out_of_stock,
                   COUNT(*) FILTER (WHERE stock_qty <= min_stock) AS low_stock,
                   COALESCE(SUM(stock_qty), 0) AS total_qty
            FROM products
            WHERE is_active = true
            """
        )
        return {"summary": row}

    return _cached(cache, ks, Namespace.INVENTORY_SUMMARY, _load)


@router.get("/valuation")
def valuation(cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        rows = _fetchall(
            """
            SELECT c.id AS category_id, c.name AS category_name,
                   COALESCE(SUM(p.stock_qty * p.purchase_price), 0) AS cost_value,
                   COALESCE(SUM(p.stock_qty * p.sale_price), 0) AS sale_value
            FROM categories c
            LEFT JOIN products p ON p.category_id = c.id AND p.is_active = true
            GROUP BY c.id, c.name
            ORDER BY c.name
            """
        )
        return {
            "categories": rows,
            "cost_value": sum((Decimal(str(r["cost_value"])) for r in rows), Decimal("0")),
            "sale_value": sum((Decimal(str(r["sale_value"])) for r in rows), Decimal("0")),
        }

    return _cached(cache, ks, Namespace.INVENTORY_VALUE, _load)


@router.get("/stats")
def stats(days: int = Query(30, ge=1, le=365), cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        rows = _fetchall(
            """
            SELECT movement_type, source_type, COUNT(*) AS movements, COALESCE(SUM(qty), 0) AS qty
            FROM stock_movements
            WHERE created_at >= now() - (%s * interval '1 day')
            GROUP BY movement_type, source_type
            ORDER BY movement_type, source_type
            """,
            (days,),
        )
        return {"days": days, "by_kind": rows}

    return _cached(cache, ks, Namespace.INVENTORY_STATS, _load, days=days)


@router.get("/products/{product_id}/report")
def product_report(product_id: int, limit: int = Query(50, ge=1, le=500), cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        p = _fetchone(
            "SELECT id, name, barcode, stock_qty, min_stock, is_active FROM products WHERE id = %s",
            (product_id,),
        )
        if not p:
            raise ProductNotFound(product_id)
        rows = _fetchall(
            """
            SELECT id, movement_type, qty, stock_before, stock_after, source_type, source_id, user_id, note, created_at
            FROM stock_movements
            WHERE product_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (product_id, limit),
        )
        return {"product": p, "movements": rows}

    return _cached(cache, ks, Namespace.INVENTORY_REPORT, _load, scope=product_id, limit=limit)


@router.post("/products/{product_id}/stock")
def post_stock_update(
    product_id: int,
    data: StockUpdateIn,
    user=Depends(get_current_user),
    orch: TransactionOrchestrator = Depends(get_orchestrator),
):
    res = orch.run(
        update_stock,
        product_id=product_id,
        qty=data.qty,
        kind=data.kind,
        note=data.note,
        source_type=data.source_type,
        user_id=user["user_id"],
    )
    return res.payload


@router.post("/products/{product_id}/adjust")
def post_stock_adjust(
    product_id: int,
    data: StockAdjustIn,
    user=Depends(get_current_user),
    orch: TransactionOrchestrator = Depends(get_orchestrator),
):
    res = orch.run(adjust_stock, product_id=product_id, new_qty=data.new_qty, note=data.note, user_id=user["user_id"])
    return res.payload


@router.get("/reconcile")
def reconcile(limit: Optional[int] = Query(None, ge=1), _user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return reconcile_all(cur, limit=limit)


@router.get("/reconcile/{product_id}")
def reconcile_one(product_id: int, _user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return reconcile_product(cur, product_id)
