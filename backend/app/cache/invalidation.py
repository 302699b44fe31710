"""
Cache invalidation after commit.

Workflows do not know cache keys. They return `CacheEvent`s describing what
changed; `plan_for()` expands them through `INVALIDATION_RULES` into concrete
exact keys and prefixes, and `CacheInvalidator.apply()` deletes them.

Invalidation is best effort: a backend failure is logged and swallowed, the
stale entry simply lives until its TTL. Deleting keys that are not there is a
no-op, so applying the same events twice is harmless.

Every apply also bumps the backend's invalidation generation, which fences
out write-backs from reads that loaded before the commit (see read_through).
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Tuple

from ..logs import json_log
from .backends import CacheBackend
from .keys import KeySpace, Namespace, default_keyspace


class EventKind(str, Enum):
    STOCK_CHANGED = "stock-changed"
    CATALOG_CHANGED = "catalog-changed"
    DOCUMENT_CREATED = "document-created"
    DOCUMENT_STATE_CHANGED = "document-state-changed"


DOCUMENT_KINDS = ("sale", "reception")


@dataclass(frozen=True)
class CacheEvent:
    kind: EventKind
    entity_ids: Tuple = ()
    document_kind: Optional[str] = None
    barcodes: Tuple = ()

    @classmethod
    def stock_changed(cls, product_ids: Iterable, barcodes: Iterable = ()) -> "CacheEvent":
        return cls(EventKind.STOCK_CHANGED, tuple(product_ids), None, tuple(b for b in barcodes if b))

    @classmethod
    def catalog_changed(cls, product_ids: Iterable, barcodes: Iterable = ()) -> "CacheEvent":
        return cls(EventKind.CATALOG_CHANGED, tuple(product_ids), None, tuple(b for b in barcodes if b))

    @classmethod
    def document_created(cls, document_kind: str, document_id=None) -> "CacheEvent":
        ids = (document_id,) if document_id is not None else ()
        return cls(EventKind.DOCUMENT_CREATED, ids, document_kind)

    @classmethod
    def document_state_changed(cls, document_kind: str, document_id) -> "CacheEvent":
        return cls(EventKind.DOCUMENT_STATE_CHANGED, (document_id,), document_kind)


# Rule scopes.
WHOLE = "whole"        # every key of the namespace
ENTITY = "entity"      # one scope per entity id
BARCODE = "barcode"    # one scope per barcode


@dataclass(frozen=True)
class Rule:
    namespace: Namespace
    exact: bool = False
    scope: str = WHOLE


_PRODUCT_RULES = (
    Rule(Namespace.PRODUCT, exact=True, scope=ENTITY),
    Rule(Namespace.PRODUCT_BARCODE, exact=True, scope=BARCODE),
    Rule(Namespace.PRODUCTS_LIST),
    Rule(Namespace.CATEGORY),
    Rule(Namespace.CATEGORIES_LIST),
    Rule(Namespace.CATEGORY_STATS),
    Rule(Namespace.INVENTORY_LOW_STOCK),
    Rule(Namespace.INVENTORY_ALERTS),
    Rule(Namespace.INVENTORY_SUMMARY),
    Rule(Namespace.INVENTORY_VALUE),
    Rule(Namespace.INVENTORY_STATS),
    Rule(Namespace.INVENTORY_REPORT, scope=ENTITY),
)

INVALIDATION_RULES = {
    (EventKind.STOCK_CHANGED, None): _PRODUCT_RULES + (Rule(Namespace.MOVEMENTS_LIST),),
    (EventKind.CATALOG_CHANGED, None): _PRODUCT_RULES,
    (EventKind.DOCUMENT_CREATED, "sale"): (
        Rule(Namespace.SALES_LIST),
        Rule(Namespace.SALES_SUMMARY),
    ),
    (EventKind.DOCUMENT_CREATED, "reception"): (
        Rule(Namespace.RECEPTIONS_LIST),
        Rule(Namespace.RECEPTIONS_STATS),
    ),
    (EventKind.DOCUMENT_STATE_CHANGED, "sale"): (
        Rule(Namespace.SALE, exact=True, scope=ENTITY),
        Rule(Namespace.SALES_LIST),
        Rule(Namespace.SALES_SUMMARY),
    ),
    (EventKind.DOCUMENT_STATE_CHANGED, "reception"): (
        Rule(Namespace.RECEPTION, exact=True, scope=ENTITY),
        Rule(Namespace.RECEPTIONS_LIST),
        Rule(Namespace.RECEPTIONS_STATS),
    ),
}


@dataclass(frozen=True)
class InvalidationPlan:
    exact_keys: Tuple[str, ...] = ()
    prefixes: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.exact_keys or self.prefixes)


def _rules_for(event: CacheEvent):
    kind = EventKind(event.kind)
    doc = event.document_kind if kind in {EventKind.DOCUMENT_CREATED, EventKind.DOCUMENT_STATE_CHANGED} else None
    rules = INVALIDATION_RULES.get((kind, doc))
    if rules is None:
        raise ValueError(f"no invalidation rules for {kind.value} {doc or ''}".strip())
    return rules


def plan_for(events: Iterable[CacheEvent], keyspace: Optional[KeySpace] = None) -> InvalidationPlan:
    """Expand events into the keys and prefixes to delete. Pure: no backend access."""
    ks = keyspace or default_keyspace()
    exact, prefixes = set(), set()
    for ev in events:
        for rule in _rules_for(ev):
            if rule.scope == WHOLE:
                scopes = [None]
            elif rule.scope == BARCODE:
                scopes = list(ev.barcodes)
            else:
                scopes = list(ev.entity_ids)
            for scope in scopes:
                if rule.exact:
                    # Detail entries carry no extra params.
                    exact.add(ks.key(rule.namespace, scope))
                elif scope is None:
                    prefixes.add(ks.namespace_prefix(rule.namespace))
                else:
                    prefixes.add(ks.scope_prefix(rule.namespace, scope))
    # A key already covered by a prefix does not need its own delete.
    exact = {k for k in exact if not any(k.startswith(p) for p in prefixes)}
    return InvalidationPlan(exact_keys=tuple(sorted(exact)), prefixes=tuple(sorted(prefixes)))


@dataclass
class InvalidationReport:
    deleted: int = 0
    failures: int = 0
    plan: InvalidationPlan = field(default_factory=InvalidationPlan)


class CacheInvalidator:
    def __init__(self, backend: CacheBackend, keyspace: Optional[KeySpace] = None):
        self.backend = backend
        self.keyspace = keyspace or default_keyspace()

    def invalidate(self, event_kind, entity_ids: Iterable = (), *, document_kind: Optional[str] = None, barcodes: Iterable = ()) -> InvalidationReport:
        ev = CacheEvent(EventKind(event_kind), tuple(entity_ids), document_kind, tuple(b for b in barcodes if b))
        return self.apply([ev])

    def apply(self, events: Iterable[CacheEvent]) -> InvalidationReport:
        events = list(events or [])
        if not events:
            return InvalidationReport()
        try:
            plan = plan_for(events, self.keyspace)
        except ValueError as ex:
            json_log("error", "cache.invalidate.failed", stage="plan", error=str(ex))
            return InvalidationReport(failures=1)

        report = InvalidationReport(plan=plan)
        # Bump first: reads already in flight then fail their conditional write-back.
        try:
            self.backend.bump_generation()
        except Exception as ex:
            report.failures += 1
            json_log("warning", "cache.invalidate.failed", stage="generation", error=str(ex))
        for key in plan.exact_keys:
            try:
                report.deleted += int(self.backend.delete_exact(key) or 0)
            except Exception as ex:
                report.failures += 1
                json_log("warning", "cache.invalidate.failed", key=key, error=str(ex))
        for prefix in plan.prefixes:
            try:
                report.deleted += int(self.backend.delete_by_prefix(prefix) or 0)
            except Exception as ex:
                report.failures += 1
                json_log("warning", "cache.invalidate.failed", prefix=prefix, error=str(ex))

        json_log(
            "debug",
            "cache.invalidated",
            events=[e.kind.value for e in events],
            exact_keys=len(plan.exact_keys),
            prefixes=len(plan.prefixes),
            deleted=report.deleted,
            failures=report.failures,
        )
        return report
