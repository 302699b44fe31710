"""
Stock ledger primitives: the conditional balance write and the append-only movement log.

Every workflow that touches `products.stock_qty` goes through
`compare_and_mutate_balance()` followed by `record_movement()` on the same
cursor/transaction. Nothing else writes the balance column.

Concurrency control is the WHERE clause of the UPDATE itself: the statement
that subtracts stock is the statement that checks there is enough of it, so two
concurrent sellers can never both pass the check on the same units. A losing
writer sees zero affected rows; a follow-up lookup tells *why* (missing,
inactive, not enough stock). There are no `FOR UPDATE` reads of products.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .config import settings
from .errors import (
    BalanceContention,
    InsufficientStock,
    InvalidMovement,
    InvalidMutation,
    MovementArithmeticError,
    ProductInactive,
    ProductNotFound,
    StockCeilingExceeded,
    StockUnchanged,
)
from .logs import json_log

QTY_Q = Decimal("0.001")

MOVEMENT_KINDS = ("in", "out", "set")
SOURCE_KINDS = ("sale", "reception", "adjustment")

# sale: out on creation, in on reversal. reception: goods in only.
ALLOWED_KINDS_BY_SOURCE = {
    "sale": frozenset({"in", "out"}),
    "reception": frozenset({"in"}),
    "adjustment": frozenset({"in", "out", "set"}),
}

# Compare-and-set retries for `set` when a concurrent writer moved the balance
# between our read and our write.
SET_MAX_ATTEMPTS = 3


def q_qty(v) -> Decimal:
    return Decimal(str(v if v is not None else 0)).quantize(QTY_Q, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BalanceChange:
    product_id: int
    product_name: str
    kind: str
    qty: Decimal
    before: Decimal
    after: Decimal

    @property
    def delta(self) -> Decimal:
        return self.after - self.before

    @property
    def movement_qty(self) -> Decimal:
        # For `set` the requested qty is the target balance; the ledger stores the distance moved.
        if self.kind == "set":
            return abs(self.delta)
        return self.qty


def _normalize_qty(qty, kind: str) -> Decimal:
    try:
        q = q_qty(qty)
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidMutation("quantity is not a number", qty=str(qty), kind=kind)
    if kind == "set":
        if q < 0:
            raise InvalidMutation("target balance must be >= 0", qty=q, kind=kind)
    elif q <= 0:
        raise InvalidMutation("quantity must be > 0", qty=q, kind=kind)
    return q


def _lookup_product(cur, product_id) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name, stock_qty, is_active
        FROM products
        WHERE id = %s
        """,
        (product_id,),
    )
    return cur.fetchone()


def _explain_zero_rows(cur, product_id, kind: str, q: Decimal, ceiling: Decimal):
    row = _lookup_product(cur, product_id)
    if not row:
        raise ProductNotFound(product_id)
    current = q_qty(row["stock_qty"])
    if kind in {"out", "set"} and not row["is_active"]:
        raise ProductInactive(product_id, row["name"])
    if kind == "out":
        raise InsufficientStock(product_id, row["name"], current, q)
    if kind == "in":
        raise StockCeilingExceeded(
            f"stock for {row['name']} would exceed {ceiling}",
            product_id=product_id,
            current=current,
            requested=q,
            ceiling=ceiling,
        )
    # `set` lost a compare-and-set race; callers retry.
    return row


def _mutate_in(cur, product_id, q: Decimal, ceiling: Decimal) -> BalanceChange:
    cur.execute(
        """
        UPDATE products
        SET stock_qty = stock_qty + %s,
            updated_at = now()
        WHERE id = %s
          AND stock_qty + %s <= %s
        RETURNING id, name, stock_qty
        """,
        (q, product_id, q, ceiling),
    )
    row = cur.fetchone()
    if not row:
        _explain_zero_rows(cur, product_id, "in", q, ceiling)
    after = q_qty(row["stock_qty"])
    return BalanceChange(row["id"], row["name"], "in", q, after - q, after)


def _mutate_out(cur, product_id, q: Decimal, ceiling: Decimal) -> BalanceChange:
    cur.execute(
        """
        UPDATE products
        SET stock_qty = stock_qty - %s,
            updated_at = now()
        WHERE id = %s
          AND is_active = true
          AND stock_qty >= %s
        RETURNING id, name, stock_qty
        """,
        (q, product_id, q),
    )
    row = cur.fetchone()
    if not row:
        _explain_zero_rows(cur, product_id, "out", q, ceiling)
    after = q_qty(row["stock_qty"])
    return BalanceChange(row["id"], row["name"], "out", q, after + q, after)


def _mutate_set(cur, product_id, q: Decimal, ceiling: Decimal) -> BalanceChange:
    if q > ceiling:
        raise StockCeilingExceeded(
            f"target balance exceeds {ceiling}", product_id=product_id, requested=q, ceiling=ceiling
        )
    observed = _lookup_product(cur, product_id)
    if not observed:
        raise ProductNotFound(product_id)
    for attempt in range(1, SET_MAX_ATTEMPTS + 1):
        if not observed["is_active"]:
            raise ProductInactive(product_id, observed["name"])
        before = q_qty(observed["stock_qty"])
        if before == q:
            # Nothing to write, and a zero-qty movement is not a movement.
            raise StockUnchanged(f"stock of {observed['name']} is already {q}", product_id=product_id, current=before)
        cur.execute(
            """
            UPDATE products
            SET stock_qty = %s,
                updated_at = now()
            WHERE id = %s
              AND is_active = true
              AND stock_qty = %s
            RETURNING id, name, stock_qty
            """,
            (q, product_id, before),
        )
        row = cur.fetchone()
        if row:
            return BalanceChange(row["id"], row["name"], "set", q, before, q_qty(row["stock_qty"]))
        observed = _explain_zero_rows(cur, product_id, "set", q, ceiling)
        json_log("info", "stock.set.retry", product_id=product_id, attempt=attempt)
    raise BalanceContention(
        "balance kept changing while setting it, try again",
        product_id=product_id,
        attempts=SET_MAX_ATTEMPTS,
    )


_MUTATORS = {"in": _mutate_in, "out": _mutate_out, "set": _mutate_set}


def compare_and_mutate_balance(cur, product_id, qty, kind: str, *, ceiling: Optional[Decimal] = None) -> BalanceChange:
    """
    Apply one quantity change to one product's balance with a conditional write.

    - in:  balance += qty (bounded by the column ceiling; inactive products accepted)
    - out: balance -= qty only if balance >= qty, evaluated by the UPDATE itself
    - set: balance := qty via compare-and-set against the balance just read

    Returns the before/after pair of the write. Raises InvalidMutation for a bad
    kind or quantity, ProductNotFound / ProductInactive / InsufficientStock /
    StockCeilingExceeded when zero rows were affected, BalanceContention when a
    `set` lost every compare-and-set attempt.
    """
    if kind not in _MUTATORS:
        raise InvalidMutation(f"unknown mutation kind {kind!r}", kind=kind)
    q = _normalize_qty(qty, kind)
    return _MUTATORS[kind](cur, product_id, q, ceiling if ceiling is not None else settings.stock_ceiling)


@dataclass(frozen=True)
class MovementEntry:
    product_id: int
    kind: str
    qty: Decimal
    stock_before: Decimal
    stock_after: Decimal
    source_type: str
    user_id: int
    source_id: Optional[int] = None
    note: str = ""

    @classmethod
    def from_change(cls, change: BalanceChange, *, source_type: str, user_id: int, source_id=None, note: str = ""):
        return cls(
            product_id=change.product_id,
            kind=change.kind,
            qty=change.movement_qty,
            stock_before=change.before,
            stock_after=change.after,
            source_type=source_type,
            user_id=user_id,
            source_id=source_id,
            note=note,
        )


@dataclass(frozen=True)
class RecordedMovement:
    id: int
    created_at: datetime


def movement_arithmetic_holds(kind: str, qty: Decimal, before: Decimal, after: Decimal) -> bool:
    qty, before, after = q_qty(qty), q_qty(before), q_qty(after)
    if qty <= 0 or before < 0 or after < 0:
        return False
    if kind == "in":
        return after == before + qty
    if kind == "out":
        return after == before - qty
    if kind == "set":
        return abs(after - before) == qty
    return False


def validate_movement(entry: MovementEntry) -> None:
    if entry.kind not in MOVEMENT_KINDS:
        raise InvalidMovement(f"unknown movement kind {entry.kind!r}", kind=entry.kind)
    if entry.source_type not in SOURCE_KINDS:
        raise InvalidMovement(f"unknown source type {entry.source_type!r}", source_type=entry.source_type)
    if entry.kind not in ALLOWED_KINDS_BY_SOURCE[entry.source_type]:
        raise InvalidMovement(
            f"{entry.source_type} cannot record {entry.kind!r} movements",
            kind=entry.kind,
            source_type=entry.source_type,
        )
    if not movement_arithmetic_holds(entry.kind, entry.qty, entry.stock_before, entry.stock_after):
        raise MovementArithmeticError(
            "stock_before/stock_after do not match movement qty",
            product_id=entry.product_id,
            kind=entry.kind,
            qty=q_qty(entry.qty),
            stock_before=q_qty(entry.stock_before),
            stock_after=q_qty(entry.stock_after),
        )


def record_movement(cur, entry: MovementEntry) -> RecordedMovement:
    validate_movement(entry)
    cur.execute(
        """
        INSERT INTO stock_movements
          (product_id, movement_type, qty, stock_before, stock_after,
           source_type, source_id, user_id, note)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, created_at
        """,
        (
            entry.product_id,
            entry.kind,
            q_qty(entry.qty),
            q_qty(entry.stock_before),
            q_qty(entry.stock_after),
            entry.source_type,
            entry.source_id,
            entry.user_id,
            (entry.note or "").strip() or None,
        ),
    )
    row = cur.fetchone()
    json_log(
        "debug",
        "stock.movement.recorded",
        movement_id=row["id"],
        product_id=entry.product_id,
        kind=entry.kind,
        qty=entry.qty,
        stock_before=entry.stock_before,
        stock_after=entry.stock_after,
        source_type=entry.source_type,
        source_id=entry.source_id,
        user_id=entry.user_id,
    )
    return RecordedMovement(id=row["id"], created_at=row["created_at"])


def apply_movement(cur, product_id, qty, kind: str, *, source_type: str, user_id: int, source_id=None, note: str = ""):
    # mutate -> record, always in this order and on the same cursor.
    change = compare_and_mutate_balance(cur, product_id, qty, kind)
    movement = record_movement(
        cur,
        MovementEntry.from_change(change, source_type=source_type, user_id=user_id, source_id=source_id, note=note),
    )
    return change, movement
