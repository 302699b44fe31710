from functools import lru_cache
from typing import Optional, Protocol

import redis

from ..config import settings
from ..logs import json_log


class CacheBackend(Protocol):
    """Key/value store behind the read cache. Every call may fail; callers treat failures as misses."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes, ttl: int) -> None:
        ...

    def delete_exact(self, key: str) -> int:
        ...

    def delete_by_prefix(self, prefix: str) -> int:
        ...

    def generation(self) -> Optional[bytes]:
        ...

    def bump_generation(self) -> int:
        ...

    def set_if_generation(self, key: str, value: bytes, ttl: int, expected: Optional[bytes]) -> bool:
        """Write only if no invalidation ran since `expected` was read."""
        ...


class NullCacheBackend:
    """Used when no REDIS_URL is configured: every read misses, every delete is a no-op."""

    def get(self, key: str) -> Optional[bytes]:
        return None

    def set(self, key: str, value: bytes, ttl: int) -> None:
        return None

    def delete_exact(self, key: str) -> int:
        return 0

    def delete_by_prefix(self, prefix: str) -> int:
        return 0

    def generation(self) -> Optional[bytes]:
        return None

    def bump_generation(self) -> int:
        return 0

    def set_if_generation(self, key: str, value: bytes, ttl: int, expected: Optional[bytes]) -> bool:
        return False


_GLOB_SPECIALS = "\\*?[]"


def _escape_glob(raw: str) -> str:
    return "".join(("\\" + c) if c in _GLOB_SPECIALS else c for c in raw)


class RedisCacheBackend:
    def __init__(
        self,
        client: "redis.Redis",
        *,
        generation_key: str = "cache:generation",
        scan_count: int = 500,
        delete_batch: int = 500,
    ):
        self.client = client
        self.generation_key = generation_key
        self.scan_count = scan_count
        self.delete_batch = delete_batch

    @classmethod
    def from_url(cls, url: str, *, generation_key: str = "cache:generation") -> "RedisCacheBackend":
        # Short timeouts; a miss falls through to the database.
        client = redis.Redis.from_url(url, socket_timeout=0.5, socket_connect_timeout=0.5)
        return cls(client, generation_key=generation_key)

    def get(self, key: str) -> Optional[bytes]:
        return self.client.get(key)

    def set(self, key: str, value: bytes, ttl: int) -> None:
        self.client.set(key, value, ex=max(1, int(ttl)))

    def delete_exact(self, key: str) -> int:
        return int(self.client.delete(key) or 0)

    def delete_by_prefix(self, prefix: str) -> int:
        # SCAN, not KEYS.
        deleted = 0
        batch = []
        for key in self.client.scan_iter(match=_escape_glob(prefix) + "*", count=self.scan_count):
            batch.append(key)
            if len(batch) >= self.delete_batch:
                deleted += int(self.client.unlink(*batch) or 0)
                batch = []
        if batch:
            deleted += int(self.client.unlink(*batch) or 0)
        return deleted

    def generation(self) -> Optional[bytes]:
        return self.client.get(self.generation_key)

    def bump_generation(self) -> int:
        return int(self.client.incr(self.generation_key))

    def set_if_generation(self, key: str, value: bytes, ttl: int, expected: Optional[bytes]) -> bool:
        # WATCH the counter: an INCR between the check and EXEC aborts the SET.
        with self.client.pipeline() as pipe:
            try:
                pipe.watch(self.generation_key)
                if pipe.get(self.generation_key) != expected:
                    return False
                pipe.multi()
                pipe.set(key, value, ex=max(1, int(ttl)))
                pipe.execute()
                return True
            except redis.WatchError:
                return False


@lru_cache(maxsize=1)
def get_cache_backend() -> CacheBackend:
    if not settings.redis_url:
        json_log("info", "startup.cache_disabled")
        return NullCacheBackend()
    json_log("info", "startup.cache_enabled", prefix=settings.cache_key_prefix)
    return RedisCacheBackend.from_url(settings.redis_url, generation_key=f"{settings.cache_key_prefix}:generation")
