"""
Cache key construction.

Keys are `{prefix}:{namespace}:{scope}:{params}`:
- namespace: one of `Namespace`, a read path family
- scope: the entity the entry belongs to (product id, sale id...) or `_`
- params: `all` or a short digest of the canonical JSON of the remaining query params

Every read path builds its key through `KeySpace.key()`, and the invalidation
table only ever talks in namespaces and scopes, so the two cannot drift apart
the way hand-formatted strings do.
"""
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..config import settings


class Namespace(str, Enum):
    PRODUCT = "product"
    PRODUCT_BARCODE = "product_barcode"
    PRODUCTS_LIST = "products_list"
    CATEGORY = "category"
    CATEGORIES_LIST = "categories_list"
    CATEGORY_STATS = "category_stats"
    INVENTORY_LOW_STOCK = "inventory_low_stock"
    INVENTORY_ALERTS = "inventory_alerts"
    INVENTORY_SUMMARY = "inventory_summary"
    INVENTORY_VALUE = "inventory_value"
    INVENTORY_STATS = "inventory_stats"
    INVENTORY_REPORT = "inventory_report"
    MOVEMENTS_LIST = "movements_list"
    SALE = "sale"
    SALES_LIST = "sales_list"
    SALES_SUMMARY = "sales_summary"
    RECEPTION = "reception"
    RECEPTIONS_LIST = "receptions_list"
    RECEPTIONS_STATS = "receptions_stats"


TTL_SECONDS = {
    Namespace.PRODUCT: 600,
    Namespace.PRODUCT_BARCODE: 600,
    Namespace.PRODUCTS_LIST: 300,
    Namespace.CATEGORY: 600,
    Namespace.CATEGORIES_LIST: 600,
    Namespace.CATEGORY_STATS: 900,
    Namespace.INVENTORY_LOW_STOCK: 120,
    Namespace.INVENTORY_ALERTS: 60,
    Namespace.INVENTORY_SUMMARY: 300,
    Namespace.INVENTORY_VALUE: 600,
    Namespace.INVENTORY_STATS: 900,
    Namespace.INVENTORY_REPORT: 300,
    Namespace.MOVEMENTS_LIST: 120,
    Namespace.SALE: 600,
    Namespace.SALES_LIST: 120,
    Namespace.SALES_SUMMARY: 300,
    Namespace.RECEPTION: 600,
    Namespace.RECEPTIONS_LIST: 300,
    Namespace.RECEPTIONS_STATS: 900,
}

NO_SCOPE = "_"


def ttl_for(namespace: Namespace) -> int:
    return TTL_SECONDS.get(namespace, 300)


def _params_part(params: dict) -> str:
    clean = {k: v for k, v in params.items() if v is not None}
    if not clean:
        return "all"
    canonical = json.dumps(clean, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:16]


def _scope_part(scope: Any) -> str:
    if scope is None:
        return NO_SCOPE
    raw = str(scope).strip()
    # Colons are the key separator.
    return raw.replace(":", "_") or NO_SCOPE


@dataclass(frozen=True)
class KeySpace:
    prefix: str

    def key(self, namespace: Namespace, scope: Optional[Any] = None, **params) -> str:
        return f"{self.namespace_prefix(namespace)}{_scope_part(scope)}:{_params_part(params)}"

    def namespace_prefix(self, namespace: Namespace) -> str:
        return f"{self.prefix}:{Namespace(namespace).value}:"

    def scope_prefix(self, namespace: Namespace, scope: Any) -> str:
        return f"{self.namespace_prefix(namespace)}{_scope_part(scope)}:"


def default_keyspace() -> KeySpace:
    return KeySpace(settings.cache_key_prefix)
