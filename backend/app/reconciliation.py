"""
Ledger reconciliation: replay a product's movements and compare with its stored balance.

Read-only. Checks, per product, in (created_at, id) order starting from 0:
- chain continuity: each row's stock_before equals the running balance
- row arithmetic: in/out/set rows are internally consistent
- closing balance: the last running balance equals products.stock_qty

A `set` row is absolute: the running balance becomes its stock_after.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional

from .errors import ProductNotFound
from .logs import json_log
from .stock_ledger import movement_arithmetic_holds, q_qty


@dataclass
class Finding:
    kind: str
    product_id: int
    movement_id: Optional[int]
    message: str


@dataclass
class ReplayResult:
    balance: Decimal
    movements: int
    findings: List[Finding] = field(default_factory=list)


def replay_movements(rows: Iterable[dict], opening: Decimal = Decimal("0"), product_id: int = 0) -> ReplayResult:
    balance = q_qty(opening)
    findings: List[Finding] = []
    n = 0
    for r in rows:
        n += 1
        kind = r["movement_type"]
        qty, before, after = q_qty(r["qty"]), q_qty(r["stock_before"]), q_qty(r["stock_after"])
        if before != balance:
            findings.append(
                Finding(
                    kind="chain_break",
                    product_id=product_id,
                    movement_id=r.get("id"),
                    message=f"stock_before={before} but running balance is {balance}",
                )
            )
        if not movement_arithmetic_holds(kind, qty, before, after):
            findings.append(
                Finding(
                    kind="row_arithmetic",
                    product_id=product_id,
                    movement_id=r.get("id"),
                    message=f"{kind} qty={qty} does not take {before} to {after}",
                )
            )
        if kind == "in":
            balance = balance + qty
        elif kind == "out":
            balance = balance - qty
        else:
            balance = after
    return ReplayResult(balance=balance, movements=n, findings=findings)


def _movements_for(cur, product_id) -> list:
    cur.execute(
        """
        SELECT id, movement_type, qty, stock_before, stock_after, created_at
        FROM stock_movements
        WHERE product_id = %s
        ORDER BY created_at, id
        """,
        (product_id,),
    )
    return cur.fetchall()


def reconcile_product(cur, product_id) -> dict:
    cur.execute(
        """
        SELECT id, name, stock_qty, is_active
        FROM products
        WHERE id = %s
        """,
        (product_id,),
    )
    p = cur.fetchone()
    if not p:
        raise ProductNotFound(product_id)

    replay = replay_movements(_movements_for(cur, product_id), product_id=product_id)
    stored = q_qty(p["stock_qty"])
    findings = list(replay.findings)
    if replay.balance != stored:
        findings.append(
            Finding(
                kind="balance_mismatch",
                product_id=product_id,
                movement_id=None,
                message=f"stored stock_qty={stored} but movements replay to {replay.balance}",
            )
        )
    for f in findings:
        json_log("warning", "ledger.reconcile.mismatch", product_id=product_id, kind=f.kind, movement_id=f.movement_id, message=f.message)
    return {
        "product_id": product_id,
        "product_name": p["name"],
        "stored_balance": stored,
        "replayed_balance": replay.balance,
        "movements": replay.movements,
        "ok": not findings,
        "findings": [f.__dict__ for f in findings],
    }


def reconcile_all(cur, limit: Optional[int] = None) -> dict:
    # LIMIT NULL is LIMIT ALL in Postgres.
    cur.execute("SELECT id FROM products ORDER BY id LIMIT %s", (limit,))
    ids = [r["id"] for r in cur.fetchall()]
    results = [reconcile_product(cur, pid) for pid in ids]
    bad = [r for r in results if not r["ok"]]
    return {"checked": len(results), "mismatched": len(bad), "products": bad}
