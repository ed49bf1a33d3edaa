# catalog/cache.py
"""Read-through cache with a pluggable backend.

`CacheLayer` is what the service talks to. It serializes values to JSON and
never lets a backend failure reach the caller: a broken transport behaves like
an empty cache. The backend (Redis or an in-process dict) is picked once at
startup by `build_cache`.
"""
import fnmatch
import hashlib
import json
import time
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Tuple

import redis

from .config import Settings
from .utils import get_logger

logger = get_logger("catalog.cache")

DEFAULT_TTL_SECONDS = 300
DEFAULT_MAX_ENTRIES = 10000
SWEEP_INTERVAL_SECONDS = 60


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, payload: str, ttl_seconds: int) -> None: ...
    def delete(self, *keys: str) -> None: ...
    def delete_pattern(self, pattern: str) -> int: ...


class InMemoryCacheBackend:
    """Process-local backend.

    Entries expire lazily on read. Writes also sweep out every expired entry,
    at most once per `sweep_interval` seconds, and once `max_entries` is
    reached a write evicts the oldest entries, so the dict stays bounded
    however many distinct keys callers produce.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_entries: int = DEFAULT_MAX_ENTRIES,
                 sweep_interval: float = SWEEP_INTERVAL_SECONDS):
        self._clock = clock
        self.max_entries = max(1, max_entries)
        self.sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval
        self._entries: Dict[str, Tuple[str, float]] = {}

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return payload

    def set(self, key: str, payload: str, ttl_seconds: int) -> None:
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_entries or self._clock() >= self._next_sweep:
            self._sweep()
        self._entries[key] = (payload, self._clock() + ttl_seconds)

    def _sweep(self) -> None:
        now = self._clock()
        self._next_sweep = now + self.sweep_interval
        expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
        for k in expired:
            del self._entries[k]
        # dicts keep insertion order, so the first keys are the oldest writes
        overflow = len(self._entries) - self.max_entries + 1
        for k in list(self._entries)[:max(0, overflow)]:
            del self._entries[k]
        if expired or overflow > 0:
            logger.debug("Cache sweep dropped %d expired, %d oldest", len(expired), max(0, overflow))

    def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        matched = [k for k in list(self._entries) if fnmatch.fnmatchcase(k, pattern)]
        self.delete(*matched)
        return len(matched)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheBackend:
    """Shared backend on top of redis-py."""

    def __init__(self, client: "redis.Redis"):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        client = redis.Redis.from_url(url, socket_timeout=2, socket_connect_timeout=2)
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        val = self._redis.get(key)
        return val.decode("utf-8") if isinstance(val, (bytes, bytearray)) else val

    def set(self, key: str, payload: str, ttl_seconds: int) -> None:
        self._redis.setex(key, ttl_seconds, payload)

    def delete(self, *keys: str) -> None:
        if keys:
            self._redis.delete(*keys)

    def delete_pattern(self, pattern: str) -> int:
        keys = list(self._redis.scan_iter(match=pattern, count=500))
        if keys:
            self._redis.delete(*keys)
        return len(keys)


class CacheLayer:
    def __init__(self, backend: CacheBackend, default_ttl: int = DEFAULT_TTL_SECONDS):
        self.backend = backend
        self.default_ttl = default_ttl

    def get(self, key: str) -> Optional[Any]:
        try:
            payload = self.backend.get(key)
        except Exception as e:
            logger.warning("Cache get failed for %s: %s", key, e)
            return None
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except ValueError:
            logger.warning("Dropping undecodable cache entry %s", key)
            self.delete(key)
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self.default_ttl
        try:
            self.backend.set(key, json.dumps(value, default=str), ttl)
        except Exception as e:
            logger.warning("Cache set failed for %s: %s", key, e)

    def delete(self, *keys: str) -> None:
        keys = tuple(k for k in keys if k)
        if not keys:
            return
        try:
            self.backend.delete(*keys)
        except Exception as e:
            logger.warning("Cache delete failed for %s: %s", ", ".join(keys), e)

    def delete_pattern(self, pattern: str) -> int:
        try:
            return self.backend.delete_pattern(pattern)
        except Exception as e:
            logger.warning("Cache delete_pattern failed for %s: %s", pattern, e)
            return 0

    def get_or_set(self, key: str, loader: Callable[[], Any], ttl_seconds: Optional[int] = None) -> Any:
        """Return the cached value, or load, store and return it.

        Concurrent misses for the same key each run `loader`.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value, ttl_seconds)
        return value


def build_cache(settings: Settings) -> CacheLayer:
    if settings.redis_url:
        logger.info("Using Redis cache backend")
        backend = RedisCacheBackend.from_url(settings.redis_url)
    else:
        logger.info("Using in-process cache backend")
        backend = InMemoryCacheBackend(max_entries=settings.cache_max_entries)
    return CacheLayer(backend, default_ttl=settings.cache_ttl_seconds)


# Key helpers

def detail_key(id_or_slug: str) -> str:
    return f"listing:{id_or_slug}"


def detail_keys(listing_id: str, *slugs: Optional[str]) -> Iterable[str]:
    keys = [detail_key(listing_id)]
    keys.extend(detail_key(s) for s in slugs if s)
    return keys


def featured_key(limit: int) -> str:
    return f"listings:featured:{limit}"


FEATURED_PATTERN = "listings:featured:*"


def search_key(params: Dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()
    return f"listings:search:{digest}"
