from datetime import date
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..cache.keys import KeySpace, Namespace, ttl_for
from ..cache.read_through import cached_read
from ..db import get_conn
from ..deps import get_cache, get_current_user, get_keyspace, get_orchestrator
from ..errors import BusinessRuleError, DocumentNotFound
from ..orchestrator import TransactionOrchestrator
from ..validation import InvoiceNo, ReceptionStatus
from ..workflows.receptions import cancel_reception, create_reception, process_reception

router = APIRouter(prefix="/receptions", tags=["receptions"])


class ReceptionLineIn(BaseModel):
    product_id: int
    qty: Decimal = Field(gt=0)
    unit_price: Decimal = Field(gt=0)


class ReceptionIn(BaseModel):
    supplier_id: int
    invoice_no: InvoiceNo
    received_on: date
    note: Optional[str] = Field(default=None, max_length=1000)
    lines: List[ReceptionLineIn] = Field(min_length=1, max_length=500)


class ReceptionProcessIn(BaseModel):
    note: Optional[str] = Field(default=None, max_length=1000)
    update_prices: bool = True


@router.post("")
def post_reception(data: ReceptionIn, user=Depends(get_current_user), orch: TransactionOrchestrator = Depends(get_orchestrator)):
    if data.received_on > date.today():
        raise BusinessRuleError("received_on cannot be in the future", received_on=data.received_on.isoformat())
    res = orch.run(
        create_reception,
        user_id=user["user_id"],
        supplier_id=data.supplier_id,
        invoice_no=data.invoice_no,
        received_on=data.received_on,
        note=data.note,
        lines=[l.model_dump() for l in data.lines],
    )
    return {"reception": res.payload}


@router.post("/{reception_id}/process")
def post_process(
    reception_id: int,
    data: Optional[ReceptionProcessIn] = None,
    user=Depends(get_current_user),
    orch: TransactionOrchestrator = Depends(get_orchestrator),
):
    data = data or ReceptionProcessIn()
    res = orch.run(
        process_reception,
        reception_id=reception_id,
        user_id=user["user_id"],
        note=data.note,
        update_prices=data.update_prices,
    )
    return {"reception": res.payload}


@router.post("/{reception_id}/cancel")
def post_cancel(reception_id: int, user=Depends(get_current_user), orch: TransactionOrchestrator = Depends(get_orchestrator)):
    res = orch.run(cancel_reception, reception_id=reception_id, user_id=user["user_id"])
    return {"reception": res.payload}


@router.get("")
def list_receptions(
    status: Optional[ReceptionStatus] = None,
    supplier_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    cache=Depends(get_cache),
    ks: KeySpace = Depends(get_keyspace),
):
    def _load():
        where, params = ["true"], []
        if status:
            where.append("r.status = %s::reception_status")
            params.append(status)
        if supplier_id is not None:
            where.append("r.supplier_id = %s")
            params.append(supplier_id)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT r.id, r.invoice_no, r.supplier_id, s.name AS supplier_name, r.received_on,
                           r.total, r.status, r.created_at, r.processed_at, r.cancelled_at
                    FROM receptions r
                    JOIN suppliers s ON s.id = r.supplier_id
                    WHERE {' AND '.join(where)}
                    ORDER BY r.received_on DESC, r.id DESC
                    LIMIT %s OFFSET %s
                    """,
                    params + [limit, offset],
                )
                return {"receptions": cur.fetchall()}

    key = ks.key(Namespace.RECEPTIONS_LIST, None, status=status, supplier_id=supplier_id, limit=limit, offset=offset)
    data, hit = cached_read(cache, key, ttl_for(Namespace.RECEPTIONS_LIST), _load)
    return {**data, "from_cache": hit}


@router.get("/stats")
def reception_stats(supplier_id: Optional[int] = None, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT status, COUNT(*) AS receptions, COALESCE(SUM(total), 0) AS total
                    FROM receptions
                    WHERE (%s::int IS NULL OR supplier_id = %s)
                    GROUP BY status
                    ORDER BY status
                    """,
                    (supplier_id, supplier_id),
                )
                return {"by_status": cur.fetchall()}

    key = ks.key(Namespace.RECEPTIONS_STATS, None, supplier_id=supplier_id)
    data, hit = cached_read(cache, key, ttl_for(Namespace.RECEPTIONS_STATS), _load)
    return {**data, "from_cache": hit}


@router.get("/{reception_id}")
def get_reception(reception_id: int, cache=Depends(get_cache), ks: KeySpace = Depends(get_keyspace)):
    def _load():
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT r.id, r.invoice_no, r.supplier_id, s.name AS supplier_name, r.user_id, r.received_on,
                           r.total, r.note, r.status, r.created_at,
                           r.processed_at, r.processed_by_user_id, r.cancelled_at, r.cancelled_by_user_id
                    FROM receptions r
                    JOIN suppliers s ON s.id = r.supplier_id
                    WHERE r.id = %s
                    """,
                    (reception_id,),
                )
                rec = cur.fetchone()
                if not rec:
                    raise DocumentNotFound("reception", reception_id)
                cur.execute(
                    """
                    SELECT l.id, l.product_id, p.name AS product_name, l.qty, l.unit_price, l.subtotal
                    FROM reception_lines l
                    LEFT JOIN products p ON p.id = l.product_id
                    WHERE l.reception_id = %s
                    ORDER BY l.id
                    """,
                    (reception_id,),
                )
                return {"reception": rec, "lines": cur.fetchall()}

    data, hit = cached_read(cache, ks.key(Namespace.RECEPTION, reception_id), ttl_for(Namespace.RECEPTION), _load)
    return {**data, "from_cache": hit}
