from decimal import Decimal

import pytest

from backend.app.errors import ProductNotFound
from backend.app.reconciliation import reconcile_all, reconcile_product, replay_movements
from backend.app.workflows.inventory import adjust_stock, update_stock
from backend.app.workflows.sales import anul_sale, create_sale


def _row(mid, kind, qty, before, after):
    return {"id": mid, "movement_type": kind, "qty": qty, "stock_before": before, "stock_after": after}


def test_replay_follows_in_out_and_absolute_set():
    rows = [
        _row(1, "in", "10", "0", "10"),
        _row(2, "out", "4", "10", "6"),
        _row(3, "set", "14", "6", "20"),
        _row(4, "out", "1", "20", "19"),
    ]
    res = replay_movements(rows)
    assert res.balance == Decimal("19.000")
    assert res.movements == 4
    assert res.findings == []


def test_replay_reports_chain_breaks_and_bad_rows():
    rows = [
        _row(1, "in", "10", "0", "10"),
        _row(2, "out", "4", "9", "5"),
        _row(3, "in", "2", "5", "8"),
    ]
    res = replay_movements(rows, product_id=7)
    assert [(f.kind, f.movement_id) for f in res.findings] == [("chain_break", 2), ("row_arithmetic", 3)]
    assert all(f.product_id == 7 for f in res.findings)


def test_workflows_keep_the_ledger_consistent(db, user_id):
    pid = db.add_product(stock="0")
    with db.cursor() as cur:
        update_stock(cur, product_id=pid, qty="10", kind="in", user_id=user_id)
    with db.cursor() as cur:
        sale = create_sale(cur, user_id=user_id, lines=[{"product_id": pid, "qty": "3"}]).payload
    with db.cursor() as cur:
        anul_sale(cur, sale_id=sale["id"], user_id=user_id, reason="return")
    with db.cursor() as cur:
        adjust_stock(cur, product_id=pid, new_qty="8", user_id=user_id)

    with db.cursor() as cur:
        rep = reconcile_product(cur, pid)
    assert rep["ok"] is True
    assert rep["movements"] == 4
    assert rep["stored_balance"] == rep["replayed_balance"] == Decimal("8.000")


def test_out_of_band_balance_write_is_reported(db, user_id):
    pid = db.add_product(stock="0")
    with db.cursor() as cur:
        update_stock(cur, product_id=pid, qty="5", kind="in", user_id=user_id)
    db.products[pid]["stock_qty"] = Decimal("7.000")

    with db.cursor() as cur:
        rep = reconcile_product(cur, pid)
    assert rep["ok"] is False
    assert [f["kind"] for f in rep["findings"]] == ["balance_mismatch"]


def test_reconcile_all_lists_only_mismatches(db, user_id):
    good = db.add_product(name="Good", stock="0")
    bad = db.add_product(name="Bad", stock="3")
    with db.cursor() as cur:
        update_stock(cur, product_id=good, qty="2", kind="in", user_id=user_id)

    with db.cursor() as cur:
        res = reconcile_all(cur)
    assert res["checked"] == 2
    assert res["mismatched"] == 1
    assert res["products"][0]["product_id"] == bad

    with db.cursor() as cur:
        assert reconcile_all(cur, limit=1)["checked"] == 1


def test_reconcile_missing_product(db):
    with pytest.raises(ProductNotFound):
        with db.cursor() as cur:
            reconcile_product(cur, 404)
