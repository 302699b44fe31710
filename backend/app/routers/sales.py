from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..cache.keys import KeySpace, Namespace, ttl_for
from ..cache.read_through import cached_read
from ..db import get_conn
from ..deps import get_cache, get_current_user, get_keyspace, get_orchestrator
from ..errors import DocumentNotFound
from ..orchestrator import TransactionOrchestrator
from ..validation import PaymentMethod, SaleStatus
from ..workflows.sales import anul_sale, create_sale

router = APIRouter(prefix="/sales", tags=["sales"])


class SaleLineIn(BaseModel):
    product_id: int
    qty: Decimal = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, gt=0)


class SaleIn(BaseModel):
    lines: List[SaleLineIn] = Field(min_length=1, max_length=200)
    payment_method: PaymentMethod = "cash"


class SaleAnulIn(BaseModel):
    reason: str = Field(min_length=3, max_length=500)


@router.post("")
def post_sale(data: SaleIn, user=Depends(get_current_user), orch: TransactionOrchestrator = Depends(get_orchestrator)):
    res = orch.run(
        create_sale,
        user_id=user["user_id"],
        lines=[l.model_dump() for l in data.lines],
        payment_method=data.payment_method,
    )
    return {"sale": res.payload}


@router.post("/{sale_id}/anul")
def post_sale_anul(
    sale_id: int,
    data: SaleAnulIn,
    user=Depends(get_current_user),
    orch: TransactionOrchestrator = Depends(get_orchestrator),
):
    res = orch.run(anul_sale, sale_id=sale_id, user_id=user["user_id"], reason=data.reason)
    return {"sale": res.payload}


@router.get("")
def list_sales(
    status: Optional[SaleStatus] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    cache=Depends(get_cache),
    ks: KeySpace = Depends(get_keyspace),
):
    def _load():
        where, params = ["true"], []
        if status:
            where.append("s.status = %s::sale_status")
            params.append(status)
        if start_date:
            where.append("s.sold_at >= %s")
            params.append(start_date)
        if end_date:
            where.append("s.sold_at < (%s::date + 1)")
            params.append(end_date)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT s.id, s.sale_no, s.user_id, s.total, s.payment_method, s.status, s.sold_at,
                           s.anulled_at, s.anulled_by_user_id
                    FROM sales s
                    WHERE {' AND '.join(where)}
                    ORDER BY s.sold_at DESC, s.id DESC
                    LIMIT %s OFFSET %s
                    """,
                    params + [limit, offset],
                )
                return {"sales": cur.fetchall()}

    key = ks.key(Namespace.SALES_LIST, None, status=status, start_date=start_date, end_date=end_date, limit=limit, offset=offset)
    data, hit = cached_read(cache, key, ttl_for(Namespace.SALES_LIST), _load)
    return {**data, "from_cache": hit}


@router.get("/summary")
def sales_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    cache=Depends(get_cache),
    ks: KeySpace = Depends(get_keyspace),
):
    start_date = start_date or date.today()
    end_date = end_date or start_date

    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT COUNT(*) FILTER (WHERE status = 'active') AS sales,
                           COUNT(*) FILTER (WHERE status = 'anulled') AS anulled,
                           COALESCE(SUM(total) FILTER (WHERE status = 'active'), 0) AS total
                    FROM sales
                    WHERE sold_at >= %s AND sold_at < (%s::date + 1)
                    """,
                    (start_date, end_date),
                )
                row = cur.fetchone()
        return {"start_date": start_date, "end_date": end_date, "summary": row}

    key = ks.key(Namespace.SALES_SUMMARY, None, start_date=start_date, end_date=end_date)
    data, hit = cached_read(cache, key, ttl_for(Namespace.SALES_SUMMARY), _load)
    return {**data, "from_cache": hit}


@router.get("/{sale_id}")
def get_sale(sale_id: int, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, sale_no, user_id, total, payment_method, status, sold_at,
                           anulled_at, anulled_by_user_id, anul_reason
                    FROM sales
                    WHERE id = %s
                    """,
                    (sale_id,),
                )
                sale = cur.fetchone()
                if not sale:
                    raise DocumentNotFound("sale", sale_id)
                cur.execute(
                    """
                    SELECT l.id, l.product_id, p.name AS product_name, l.qty, l.unit_price, l.subtotal
                    FROM sale_lines l
                    LEFT JOIN products p ON p.id = l.product_id
                    WHERE l.sale_id = %s
                    ORDER BY l.id
                    """,
                    (sale_id,),
                )
                return {"sale": sale, "lines": cur.fetchall()}

    data, hit = cached_read(cache, ks.key(Namespace.SALE, sale_id), ttl_for(Namespace.SALE), _load)
    return {**data, "from_cache": hit}
