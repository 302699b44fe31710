import json
from typing import Any, Callable, Tuple

from ..logs import json_log
from .backends import CacheBackend


def cached_read(backend: CacheBackend, key: str, ttl: int, loader: Callable[[], Any]) -> Tuple[Any, bool]:
    """
    Read-through: return (payload, from_cache).

    The payload is always the JSON form (Decimals and dates as strings), on a
    hit and on a miss alike, so callers never see two shapes for the same read.
    Backend errors degrade to a miss; the database stays the source of truth.

    A miss is only written back if no invalidation ran while the loader was
    reading: the invalidation generation is noted before the load and the
    write is conditional on it.
    """
    raw = None
    try:
        raw = backend.get(key)
    except Exception as ex:
        json_log("warning", "cache.read.failed", key=key, error=str(ex))

    if raw is not None:
        try:
            return json.loads(raw), True
        except ValueError as ex:
            json_log("warning", "cache.read.failed", key=key, error=f"undecodable entry: {ex}")

    fenced = True
    generation = None
    try:
        generation = backend.generation()
    except Exception as ex:
        # Without a generation the write cannot be fenced; skip it.
        fenced = False
        json_log("warning", "cache.read.failed", key=key, error=f"generation: {ex}")

    encoded = json.dumps(loader(), default=str)
    if fenced:
        try:
            if not backend.set_if_generation(key, encoded.encode("utf-8"), ttl, generation):
                json_log("debug", "cache.write.skipped", key=key, reason="invalidated during load")
        except Exception as ex:
            json_log("warning", "cache.write.failed", key=key, error=str(ex))
    return json.loads(encoded), False
