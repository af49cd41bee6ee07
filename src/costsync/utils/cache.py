"""
Response caching for raw provider payloads.

Keeps raw adapter responses keyed by tenant, provider, account and date range
so repeated reads within a sync request, and service detail reads between
syncs, do not hit the provider again. Supports memory and disk backends with
configurable TTL and size limits.
"""

import logging
import threading
import time
import zlib
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import diskcache

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"


class CacheBackend(ABC):
    """Abstract base class for cache backends."""

    default_ttl: int

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Get a value from the cache."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Set a value in the cache with optional TTL."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key from the cache."""
        pass

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix, returning the count."""
        pass

    @abstractmethod
    def clear(self) -> bool:
        """Clear all entries from the cache."""
        pass

    @abstractmethod
    def size(self) -> int:
        """Get the current size of the cache."""
        pass

    @abstractmethod
    def keys(self) -> list:
        """Get all keys in the cache."""
        pass

    def stats(self) -> dict[str, Any]:
        return {"entries": self.size(), "default_ttl": self.default_ttl}


class _Stripe:
    """One lock-protected LRU partition of a MemoryCache."""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self.lock = threading.Lock()
        self.entries: OrderedDict[str, dict[str, Any]] = OrderedDict()


class MemoryCache(CacheBackend):
    """In-memory cache backend with TTL and LRU eviction.

    Entries are partitioned into stripes by tenant (the first key segment), each
    with its own lock, so concurrent syncs of different tenants rarely contend.
    """

    def __init__(
        self,
        max_size: int = 5000,
        default_ttl: int = 3600,
        stripes: int = 16,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize memory cache.

        Args:
            max_size: Maximum number of cache entries across all stripes
            default_ttl: Default TTL in seconds
            stripes: Number of independently locked partitions
            clock: Time source, injectable for tests
        """
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        per_stripe = max(1, max_size // max(1, stripes))
        self._stripes = [_Stripe(per_stripe) for _ in range(max(1, stripes))]

    def _stripe_for(self, key: str) -> _Stripe:
        tenant = key.split(KEY_SEPARATOR, 1)[0]
        return self._stripes[zlib.crc32(tenant.encode()) % len(self._stripes)]

    def _cleanup_expired(self, stripe: _Stripe):
        """Remove expired entries from one stripe; caller holds its lock."""
        now = self._clock()
        expired_keys = [key for key, entry in stripe.entries.items() if now > entry["expires_at"]]
        for key in expired_keys:
            del stripe.entries[key]

    def _evict_if_needed(self, stripe: _Stripe):
        """Evict least recently used entries if the stripe is full."""
        while len(stripe.entries) >= stripe.max_size:
            key, _ = stripe.entries.popitem(last=False)
            logger.debug(f"Evicted cache entry {key}")

    def get(self, key: str) -> Any | None:
        stripe = self._stripe_for(key)
        with stripe.lock:
            entry = stripe.entries.get(key)
            if entry is None:
                return None
            if self._clock() > entry["expires_at"]:
                del stripe.entries[key]
                return None
            stripe.entries.move_to_end(key)
            return entry["value"]

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        ttl = ttl or self.default_ttl
        stripe = self._stripe_for(key)
        with stripe.lock:
            self._cleanup_expired(stripe)
            stripe.entries.pop(key, None)
            self._evict_if_needed(stripe)
            now = self._clock()
            stripe.entries[key] = {"value": value, "created_at": now, "expires_at": now + ttl}
        return True

    def delete(self, key: str) -> bool:
        stripe = self._stripe_for(key)
        with stripe.lock:
            return stripe.entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        for stripe in self._stripes:
            with stripe.lock:
                keys = [key for key in stripe.entries if key.startswith(prefix)]
                for key in keys:
                    del stripe.entries[key]
                removed += len(keys)
        return removed

    def clear(self) -> bool:
        for stripe in self._stripes:
            with stripe.lock:
                stripe.entries.clear()
        return True

    def size(self) -> int:
        total = 0
        for stripe in self._stripes:
            with stripe.lock:
                self._cleanup_expired(stripe)
                total += len(stripe.entries)
        return total

    def keys(self) -> list:
        keys = []
        for stripe in self._stripes:
            with stripe.lock:
                self._cleanup_expired(stripe)
                keys.extend(stripe.entries.keys())
        return keys

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        return {
            "entries": self.size(),
            "max_size": self.max_size,
            "stripes": len(self._stripes),
            "default_ttl": self.default_ttl,
        }


class DiskCache(CacheBackend):
    """Disk-based cache backend using diskcache."""

    def __init__(
        self,
        directory: str = "/tmp/costsync-cache",
        max_size: int = 100_000_000,  # 100MB
        default_ttl: int = 3600,
    ):
        """
        Initialize disk cache.

        Args:
            directory: Cache directory path
            max_size: Maximum cache size in bytes
            default_ttl: Default TTL in seconds
        """
        self.directory = directory
        self.max_size = max_size
        self.default_ttl = default_ttl

        Path(directory).mkdir(parents=True, exist_ok=True)
        self._cache = diskcache.Cache(directory, size_limit=max_size)

    def get(self, key: str) -> Any | None:
        try:
            return self._cache.get(key)
        except Exception as e:
            logger.error(f"Failed to get cache entry {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        try:
            return self._cache.set(key, value, expire=ttl or self.default_ttl)
        except Exception as e:
            logger.error(f"Failed to set cache entry {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            return self._cache.delete(key)
        except Exception as e:
            logger.error(f"Failed to delete cache entry {key}: {e}")
            return False

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        for key in self.keys():
            if isinstance(key, str) and key.startswith(prefix) and self.delete(key):
                removed += 1
        return removed

    def clear(self) -> bool:
        try:
            self._cache.clear()
            return True
        except Exception as e:
            logger.error(f"Failed to clear cache: {e}")
            return False

    def size(self) -> int:
        try:
            return len(self._cache)
        except Exception as e:
            logger.error(f"Failed to get cache size: {e}")
            return 0

    def keys(self) -> list:
        try:
            return list(self._cache)
        except Exception as e:
            logger.error(f"Failed to get cache keys: {e}")
            return []

    def stats(self) -> dict[str, Any]:
        """Get cache statistics."""
        try:
            return {
                "entries": len(self._cache),
                "volume": self._cache.volume(),
                "max_size": self.max_size,
                "directory": self.directory,
                "default_ttl": self.default_ttl,
            }
        except Exception as e:
            logger.error(f"Failed to get cache stats: {e}")
            return {}

    def close(self):
        self._cache.close()


def _escape_part(part: str) -> str:
    """Percent-escape the key separator inside one key part."""
    return str(part).replace("%", "%25").replace(KEY_SEPARATOR, "%7C")


@dataclass(frozen=True)
class CacheKey:
    """Identifies one raw provider response.

    Rendered as ``tenant|provider|account|start|end`` so that string prefixes
    select everything of a tenant, of a tenant's provider, or of one account.
    """

    tenant: str
    provider: str
    account_id: str
    start_date: date
    end_date: date
    detail: str | None = None

    def render(self) -> str:
        parts = [
            self.tenant,
            self.provider,
            self.account_id,
            self.start_date.isoformat(),
            self.end_date.isoformat(),
        ]
        if self.detail is not None:
            parts.append(f"detail:{self.detail}")
        return KEY_SEPARATOR.join(_escape_part(part) for part in parts)

    @staticmethod
    def prefix(tenant: str, provider: str | None = None, account_id: str | None = None) -> str:
        parts = [tenant]
        if provider is not None:
            parts.append(provider)
            if account_id is not None:
                parts.append(account_id)
        return KEY_SEPARATOR.join(_escape_part(part) for part in parts) + KEY_SEPARATOR

    def __str__(self) -> str:
        return self.render()


class ResponseCache:
    """Raw provider response cache keyed by CacheKey."""

    def __init__(self, backend: CacheBackend | None = None, default_ttl: int = 3600, enabled: bool = True):
        self.enabled = enabled
        self.default_ttl = default_ttl
        self._backend = backend or MemoryCache(default_ttl=default_ttl)

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    def get(self, key: CacheKey) -> Any | None:
        """Get a cached payload, None on miss or backend failure."""
        if not self.enabled:
            return None
        try:
            value = self._backend.get(key.render())
        except Exception as e:
            logger.error(f"Cache get failed for {key}: {e}")
            return None
        logger.debug(f"Cache {'hit' if value is not None else 'miss'} for {key}")
        return value

    def put(self, key: CacheKey, value: Any, ttl: int | None = None) -> bool:
        if not self.enabled:
            return False
        try:
            return self._backend.set(key.render(), value, ttl or self.default_ttl)
        except Exception as e:
            logger.error(f"Cache set failed for {key}: {e}")
            return False

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose rendered key starts with prefix."""
        if not self.enabled:
            return 0
        try:
            removed = self._backend.delete_prefix(prefix)
        except Exception as e:
            logger.error(f"Cache invalidation failed for {prefix}: {e}")
            return 0
        if removed:
            logger.info(f"Invalidated {removed} cache entries for {prefix}")
        return removed

    def invalidate_tenant(self, tenant: str) -> int:
        return self.invalidate(CacheKey.prefix(tenant))

    def stats(self) -> dict[str, Any]:
        if not self.enabled:
            return {"enabled": False}
        stats = self._backend.stats()
        stats["enabled"] = True
        return stats


def parse_size(size: str | int) -> int:
    """Parse size string like '100MB' to bytes."""
    if isinstance(size, int):
        return size
    size = size.strip().upper()
    if size.endswith("KB"):
        return int(size[:-2]) * 1024
    elif size.endswith("MB"):
        return int(size[:-2]) * 1024 * 1024
    elif size.endswith("GB"):
        return int(size[:-2]) * 1024 * 1024 * 1024
    return int(size)


def build_response_cache(config: dict[str, Any] | None = None) -> ResponseCache:
    """
    Build a ResponseCache from the ``cache`` configuration section.

    Args:
        config: Keys ``enabled``, ``type`` (memory|disk), ``ttl``, ``max_entries``,
            ``stripes``, ``directory`` and ``max_size``
    """
    config = config or {}
    enabled = config.get("enabled", True)
    cache_type = str(config.get("type", "memory")).lower()
    default_ttl = int(config.get("ttl", 3600))

    if cache_type == "disk":
        backend: CacheBackend = DiskCache(
            directory=config.get("directory", "/tmp/costsync-cache"),
            max_size=parse_size(config.get("max_size", "100MB")),
            default_ttl=default_ttl,
        )
    else:
        backend = MemoryCache(
            max_size=int(config.get("max_entries", 5000)),
            default_ttl=default_ttl,
            stripes=int(config.get("stripes", 16)),
        )

    logger.info(f"Response cache initialized: {cache_type} backend, TTL: {default_ttl}s, enabled: {enabled}")
    return ResponseCache(backend, default_ttl=default_ttl, enabled=enabled)
