from decimal import Decimal

import pytest

from backend.app.cache.invalidation import EventKind
from backend.app.errors import CategoryNotFound, DuplicateProduct, ProductInactive, ProductNotFound
from backend.app.reconciliation import reconcile_product
from backend.app.stock_ledger import apply_movement
from backend.app.workflows.products import INITIAL_STOCK_NOTE, create_product, set_product_active


def _create(cur, user_id, category_id, **kw):
    args = dict(user_id=user_id, name="Olive Oil 1L", category_id=category_id, purchase_price="4.10", sale_price="6.50")
    args.update(kw)
    return create_product(cur, **args)


def test_initial_stock_is_booked_as_a_movement(db, user_id):
    cat = db.add_category()
    with db.cursor() as cur:
        res = _create(cur, user_id, cat, initial_stock="12", barcode="5901234")

    pid = res.payload["id"]
    assert res.payload["stock_qty"] == Decimal("12.000")
    [m] = db.movements_for(pid)
    assert (m["movement_type"], m["qty"], m["stock_before"], m["stock_after"]) == (
        "in",
        Decimal("12.000"),
        Decimal("0.000"),
        Decimal("12.000"),
    )
    assert m["note"] == INITIAL_STOCK_NOTE
    assert [e.kind for e in res.events] == [EventKind.CATALOG_CHANGED, EventKind.STOCK_CHANGED]
    with db.cursor() as cur:
        assert reconcile_product(cur, pid)["ok"] is True


def test_product_without_initial_stock_has_no_movements(db, user_id):
    cat = db.add_category()
    with db.cursor() as cur:
        res = _create(cur, user_id, cat)
    assert db.movements == []
    assert [e.kind for e in res.events] == [EventKind.CATALOG_CHANGED]


def test_duplicate_name_and_barcode(db, user_id):
    cat = db.add_category()
    db.add_product(name="Olive Oil 1L")
    db.add_product(name="Vinegar", barcode="111")
    with pytest.raises(DuplicateProduct):
        with db.cursor() as cur:
            _create(cur, user_id, cat, name="olive oil 1l")
    with pytest.raises(DuplicateProduct):
        with db.cursor() as cur:
            _create(cur, user_id, cat, name="Sunflower Oil", barcode="111")


def test_unknown_category(db, user_id):
    with pytest.raises(CategoryNotFound):
        with db.cursor() as cur:
            _create(cur, user_id, 404)
    assert db.products == {}


def test_deactivated_product_cannot_be_sold_but_can_be_reactivated(db, user_id):
    pid = db.add_product(stock="5")
    with db.cursor() as cur:
        res = set_product_active(cur, product_id=pid, active=False, user_id=user_id)
    assert res.payload["is_active"] is False

    with pytest.raises(ProductInactive):
        with db.cursor() as cur:
            apply_movement(cur, pid, "1", "out", source_type="adjustment", user_id=user_id)

    with db.cursor() as cur:
        set_product_active(cur, product_id=pid, active=True, user_id=user_id)
        apply_movement(cur, pid, "1", "out", source_type="adjustment", user_id=user_id)
    assert db.stock(pid) == Decimal("4.000")


def test_set_active_on_missing_product(db, user_id):
    with pytest.raises(ProductNotFound):
        with db.cursor() as cur:
            set_product_active(cur, product_id=404, active=False, user_id=user_id)
