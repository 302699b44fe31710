import threading
from decimal import Decimal

import pytest

from backend.app.errors import (
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
from backend.app.stock_ledger import (
    BalanceChange,
    MovementEntry,
    apply_movement,
    compare_and_mutate_balance,
    movement_arithmetic_holds,
    record_movement,
)


def test_out_subtracts_and_reports_exact_before_after(db):
    pid = db.add_product(stock="10")
    with db.cursor() as cur:
        change = compare_and_mutate_balance(cur, pid, "3.5", "out")
    assert change.before == Decimal("10.000")
    assert change.after == Decimal("6.500")
    assert change.product_name == "Rice 1kg"
    assert db.stock(pid) == Decimal("6.500")


def test_out_with_insufficient_stock_reports_current_and_requested(db):
    pid = db.add_product(stock="2")
    with pytest.raises(InsufficientStock) as ei:
        with db.cursor() as cur:
            compare_and_mutate_balance(cur, pid, "3", "out")
    assert ei.value.current == Decimal("2.000")
    assert ei.value.requested == Decimal("3.000")
    assert ei.value.context["product_name"] == "Rice 1kg"
    assert db.stock(pid) == Decimal("2.000")


def test_out_on_inactive_product_is_rejected(db):
    pid = db.add_product(stock="5", is_active=False)
    with pytest.raises(ProductInactive):
        with db.cursor() as cur:
            compare_and_mutate_balance(cur, pid, "1", "out")
    assert db.stock(pid) == Decimal("5.000")


def test_in_lands_on_inactive_product(db):
    pid = db.add_product(stock="5", is_active=False)
    with db.cursor() as cur:
        change = compare_and_mutate_balance(cur, pid, "2", "in")
    assert change.after == Decimal("7.000")


def test_in_above_ceiling_is_rejected(db):
    pid = db.add_product(stock="9")
    with pytest.raises(StockCeilingExceeded):
        with db.cursor() as cur:
            compare_and_mutate_balance(cur, pid, "2", "in", ceiling=Decimal("10"))
    assert db.stock(pid) == Decimal("9.000")


def test_missing_product(db):
    for kind in ("in", "out", "set"):
        with pytest.raises(ProductNotFound):
            with db.cursor() as cur:
                compare_and_mutate_balance(cur, 999, "1", kind)


@pytest.mark.parametrize("qty,kind", [("0", "out"), ("-1", "in"), ("abc", "in"), ("1", "sideways"), ("-1", "set")])
def test_invalid_mutations(db, qty, kind):
    pid = db.add_product(stock="5")
    with pytest.raises(InvalidMutation):
        with db.cursor() as cur:
            compare_and_mutate_balance(cur, pid, qty, kind)


def test_set_retries_when_balance_moves_between_read_and_write(db):
    pid = db.add_product(stock="10")
    bumped = []

    def concurrent_writer(db_, sql, params):
        if sql.startswith("UPDATE products SET stock_qty = %s") and not bumped:
            bumped.append(True)
            db_.products[pid]["stock_qty"] += Decimal("1")

    db.hooks.append(concurrent_writer)
    with db.cursor() as cur:
        change = compare_and_mutate_balance(cur, pid, "20", "set")
    assert change.before == Decimal("11.000")
    assert change.after == Decimal("20.000")
    assert change.movement_qty == Decimal("9.000")


def test_set_gives_up_after_bounded_attempts(db):
    pid = db.add_product(stock="10")

    def always_moving(db_, sql, params):
        if sql.startswith("UPDATE products SET stock_qty = %s"):
            db_.products[pid]["stock_qty"] += Decimal("1")

    db.hooks.append(always_moving)
    with pytest.raises(BalanceContention):
        with db.cursor() as cur:
            compare_and_mutate_balance(cur, pid, "50", "set")
    set_attempts = [s for s in db.statements if s.startswith("UPDATE products SET stock_qty = %s")]
    assert len(set_attempts) == 3


def test_set_to_current_balance_is_unchanged(db):
    pid = db.add_product(stock="4")
    with pytest.raises(StockUnchanged):
        with db.cursor() as cur:
            compare_and_mutate_balance(cur, pid, "4", "set")


def test_set_to_zero_is_allowed(db, user_id):
    pid = db.add_product(stock="4")
    with db.cursor() as cur:
        change, _ = apply_movement(cur, pid, "0", "set", source_type="adjustment", user_id=user_id)
    assert change.after == Decimal("0.000")
    assert db.movements_for(pid)[0]["qty"] == Decimal("4.000")


def test_no_row_locks_are_taken(db, user_id):
    pid = db.add_product(stock="10")
    with db.cursor() as cur:
        apply_movement(cur, pid, "1", "out", source_type="adjustment", user_id=user_id)
        apply_movement(cur, pid, "3", "set", source_type="adjustment", user_id=user_id)
    assert not [s for s in db.statements if "FOR UPDATE" in s.upper()]


def test_concurrent_outs_never_oversell(db, user_id):
    pid = db.add_product(stock="10")
    ok, rejected = [], []
    start = threading.Barrier(25)

    def sell():
        start.wait()
        try:
            with db.cursor() as cur:
                apply_movement(cur, pid, "1", "out", source_type="adjustment", user_id=user_id)
            ok.append(1)
        except InsufficientStock:
            rejected.append(1)

    threads = [threading.Thread(target=sell) for _ in range(25)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(ok) == 10
    assert len(rejected) == 15
    assert db.stock(pid) == Decimal("0.000")
    assert len(db.movements_for(pid)) == 10


def test_record_movement_rejects_mismatched_source_and_kind(db, user_id):
    pid = db.add_product(stock="10")
    bad = [
        ("sale", "set", "2", "10", "12"),
        ("reception", "out", "2", "10", "8"),
    ]
    for source, kind, qty, before, after in bad:
        entry = MovementEntry(pid, kind, Decimal(qty), Decimal(before), Decimal(after), source, user_id)
        with pytest.raises(InvalidMovement):
            with db.cursor() as cur:
                record_movement(cur, entry)
    assert db.movements == []


def test_record_movement_rejects_bad_arithmetic(db, user_id):
    pid = db.add_product(stock="10")
    entry = MovementEntry(pid, "out", Decimal("2"), Decimal("10"), Decimal("9"), "adjustment", user_id)
    with pytest.raises(MovementArithmeticError):
        with db.cursor() as cur:
            record_movement(cur, entry)
    assert db.movements == []


def test_movement_arithmetic():
    assert movement_arithmetic_holds("in", Decimal("2"), Decimal("1"), Decimal("3"))
    assert movement_arithmetic_holds("out", Decimal("2"), Decimal("3"), Decimal("1"))
    assert movement_arithmetic_holds("set", Decimal("14"), Decimal("6"), Decimal("20"))
    assert movement_arithmetic_holds("set", Decimal("4"), Decimal("6"), Decimal("2"))
    assert not movement_arithmetic_holds("out", Decimal("2"), Decimal("1"), Decimal("-1"))
    assert not movement_arithmetic_holds("in", Decimal("0"), Decimal("1"), Decimal("1"))


def test_set_movement_records_distance_moved():
    change = BalanceChange(1, "Rice", "set", Decimal("20"), Decimal("6"), Decimal("20"))
    entry = MovementEntry.from_change(change, source_type="adjustment", user_id=1)
    assert entry.qty == Decimal("14")
    assert entry.stock_before == Decimal("6")
    assert entry.stock_after == Decimal("20")
