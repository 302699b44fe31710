import json
from decimal import Decimal

import pytest
import redis

from backend.app.cache.backends import RedisCacheBackend
from backend.app.cache.invalidation import CacheEvent, CacheInvalidator, EventKind, plan_for
from backend.app.cache.keys import Namespace
from backend.app.cache.read_through import cached_read


def _fill(cache, keys):
    for k in keys:
        cache.set(k, b"{}", 60)


def test_stock_change_plan_names_product_detail_and_aggregates(keyspace):
    plan = plan_for([CacheEvent.stock_changed([1], ["4001"])], keyspace)
    assert plan.exact_keys == ("test:product:1:all", "test:product_barcode:4001:all")
    assert "test:inventory_low_stock:" in plan.prefixes
    assert "test:inventory_value:" in plan.prefixes
    assert "test:movements_list:" in plan.prefixes
    assert "test:products_list:" in plan.prefixes
    assert "test:inventory_report:1:" in plan.prefixes
    assert not any(p.startswith("test:sales") for p in plan.prefixes)


def test_catalog_change_does_not_touch_movements(keyspace):
    plan = plan_for([CacheEvent.catalog_changed([3])], keyspace)
    assert "test:movements_list:" not in plan.prefixes
    assert "test:product:3:all" in plan.exact_keys


def test_document_events_stay_in_their_document_family(keyspace):
    plan = plan_for([CacheEvent.document_created("reception", 9)], keyspace)
    assert plan.exact_keys == ()
    assert plan.prefixes == ("test:receptions_list:", "test:receptions_stats:")

    plan = plan_for([CacheEvent.document_state_changed("sale", 4)], keyspace)
    assert plan.exact_keys == ("test:sale:4:all",)
    assert set(plan.prefixes) == {"test:sales_list:", "test:sales_summary:"}


def test_entity_scope_does_not_spill_into_other_ids(cache, keyspace):
    report_1 = keyspace.key(Namespace.INVENTORY_REPORT, 1, days=30)
    report_12 = keyspace.key(Namespace.INVENTORY_REPORT, 12, days=30)
    product_12 = keyspace.key(Namespace.PRODUCT, 12)
    _fill(cache, [report_1, report_12, product_12])

    CacheInvalidator(cache, keyspace).apply([CacheEvent.stock_changed([1])])

    assert report_1 not in cache.data
    assert report_12 in cache.data
    assert product_12 in cache.data


def test_invalidation_removes_dependent_reads(cache, keyspace):
    stale = [
        keyspace.key(Namespace.PRODUCT, 5),
        keyspace.key(Namespace.PRODUCTS_LIST, None, limit=50, offset=0),
        keyspace.key(Namespace.INVENTORY_SUMMARY),
        keyspace.key(Namespace.CATEGORY_STATS),
    ]
    unrelated = keyspace.key(Namespace.SALES_LIST, None, limit=100)
    _fill(cache, stale + [unrelated])

    report = CacheInvalidator(cache, keyspace).invalidate(EventKind.STOCK_CHANGED, [5])

    assert report.failures == 0
    assert report.deleted == 4
    assert list(cache.data) == [unrelated]


def test_invalidating_twice_is_harmless(cache, keyspace):
    _fill(cache, [keyspace.key(Namespace.SALE, 2)])
    inv = CacheInvalidator(cache, keyspace)
    first = inv.invalidate("document-state-changed", [2], document_kind="sale")
    second = inv.invalidate("document-state-changed", [2], document_kind="sale")
    assert first.deleted == 1
    assert second.deleted == 0
    assert second.failures == 0


def test_backend_failures_are_counted_not_raised(failing_cache, keyspace):
    report = CacheInvalidator(failing_cache, keyspace).apply([CacheEvent.stock_changed([1])])
    assert report.deleted == 0
    # The generation bump plus every key and prefix.
    assert report.failures == 1 + len(report.plan.exact_keys) + len(report.plan.prefixes)
    assert failing_cache.calls == report.failures


def test_unknown_document_kind_is_reported(cache, keyspace):
    report = CacheInvalidator(cache, keyspace).apply([CacheEvent.document_created("invoice", 1)])
    assert report.failures == 1
    assert cache.deleted == []
    assert cache.gen == 0


def test_key_params_are_order_insensitive_and_drop_nones(keyspace):
    a = keyspace.key(Namespace.PRODUCTS_LIST, None, limit=10, offset=20, q=None)
    b = keyspace.key(Namespace.PRODUCTS_LIST, None, offset=20, limit=10)
    assert a == b
    assert keyspace.key(Namespace.PRODUCT, "a:b") == "test:product:a_b:all"


def test_cached_read_miss_then_hit(cache, keyspace):
    calls = []

    def load():
        calls.append(1)
        return {"qty": Decimal("1.500"), "name": "Rice"}

    key = keyspace.key(Namespace.PRODUCT, 1)
    first, hit1 = cached_read(cache, key, 600, load)
    second, hit2 = cached_read(cache, key, 600, load)

    assert (hit1, hit2) == (False, True)
    assert first == second == {"qty": "1.500", "name": "Rice"}
    assert len(calls) == 1
    assert cache.ttls[key] == 600


def test_invalidation_during_a_load_blocks_the_stale_write_back(cache, keyspace):
    key = keyspace.key(Namespace.PRODUCT, 1)
    inv = CacheInvalidator(cache, keyspace)

    def load_then_commit_elsewhere():
        row = {"id": 1, "stock_qty": "10.000"}
        # Another request commits a sale and invalidates while this read is in flight.
        inv.apply([CacheEvent.stock_changed([1])])
        return row

    data, hit = cached_read(cache, key, 600, load_then_commit_elsewhere)

    assert (data, hit) == ({"id": 1, "stock_qty": "10.000"}, False)
    assert key not in cache.data

    fresh, hit = cached_read(cache, key, 600, lambda: {"id": 1, "stock_qty": "7.000"})
    assert hit is False
    assert json.loads(cache.data[key]) == fresh == {"id": 1, "stock_qty": "7.000"}


def test_cached_read_falls_back_to_loader_when_cache_is_down(failing_cache):
    data, hit = cached_read(failing_cache, "k", 60, lambda: {"ok": True})
    assert data == {"ok": True}
    assert hit is False
    # One failed get, one failed generation read; the write-back is skipped.
    assert failing_cache.calls == 2


def test_cached_read_ignores_undecodable_entries(cache):
    cache.set("k", b"\xff not json", 60)
    data, hit = cached_read(cache, "k", 60, lambda: [1, 2])
    assert (data, hit) == ([1, 2], False)
    assert json.loads(cache.data["k"]) == [1, 2]


def test_loader_errors_are_not_cached(cache):
    def boom():
        raise LookupError("missing")

    with pytest.raises(LookupError):
        cached_read(cache, "k", 60, boom)
    assert "k" not in cache.data


class _StubRedis:
    def __init__(self, keys):
        self.keys = list(keys)
        self.matches = []
        self.unlinked = []

    def scan_iter(self, match=None, count=None):
        self.matches.append(match)
        prefix = match[:-1].replace("\\", "")
        return iter([k for k in self.keys if k.startswith(prefix)])

    def unlink(self, *keys):
        self.unlinked.append(keys)
        return len(keys)


def test_redis_prefix_delete_escapes_glob_and_batches():
    client = _StubRedis([f"test:products_list:_:{i}" for i in range(5)] + ["test:product:1:all"])
    backend = RedisCacheBackend(client, delete_batch=2)

    deleted = backend.delete_by_prefix("test:products_list:")

    assert deleted == 5
    assert [len(b) for b in client.unlinked] == [2, 2, 1]
    assert client.matches == ["test:products_list:*"]
    backend.delete_by_prefix("test:inventory_report:[1]:")
    assert client.matches[-1] == "test:inventory_report:\\[1\\]:*"


class _StubPipeline:
    def __init__(self, client):
        self.client = client
        self.queued = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def watch(self, key):
        self.client.watched.append(key)

    def get(self, key):
        return self.client.store.get(key)

    def multi(self):
        pass

    def set(self, key, value, ex=None):
        self.queued.append((key, value, ex))

    def execute(self):
        if self.client.bump_before_exec:
            raise redis.WatchError("watched key changed")
        for key, value, ex in self.queued:
            self.client.store[key] = value
        return [True] * len(self.queued)


class _StubWatchRedis:
    def __init__(self, generation=None, bump_before_exec=False):
        self.store = {"test:generation": generation} if generation is not None else {}
        self.watched = []
        self.bump_before_exec = bump_before_exec

    def pipeline(self):
        return _StubPipeline(self)

    def get(self, key):
        return self.store.get(key)


def test_redis_conditional_write_watches_the_generation_key():
    client = _StubWatchRedis(generation=b"4")
    backend = RedisCacheBackend(client, generation_key="test:generation")

    assert backend.set_if_generation("test:product:1:all", b"{}", 600, b"4") is True
    assert client.watched == ["test:generation"]
    assert client.store["test:product:1:all"] == b"{}"

    assert backend.set_if_generation("test:product:2:all", b"{}", 600, b"3") is False
    assert "test:product:2:all" not in client.store


def test_redis_conditional_write_loses_to_a_concurrent_bump():
    client = _StubWatchRedis(generation=b"4", bump_before_exec=True)
    backend = RedisCacheBackend(client, generation_key="test:generation")

    assert backend.set_if_generation("test:product:1:all", b"{}", 600, b"4") is False
    assert "test:product:1:all" not in client.store
