"""
In-memory TTL cache.

Used as a response cache by every source adapter, by the health aggregator,
and as the backing store of the processed/blacklist registry. Entries expire
lazily on read and can be swept explicitly. Callers must not assume an entry
survives until its TTL: the cache evicts when full.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float


@dataclass
class CacheStats:
    """Snapshot of cache usage."""

    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    expirations: int
    hit_rate: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TTLCache:
    """
    Key/value store with per-entry expiry.

    Usage:
        cache = TTLCache(default_ttl=300)
        cache.set("rugcheck:analysis:abc", result, ttl=300)
        hit = cache.get("rugcheck:analysis:abc")   # None once expired
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or `default` on a miss or expired entry."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return default
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return default
        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        now = self._clock()
        if key not in self._entries and len(self._entries) >= self._max_size:
            self.sweep()
            if len(self._entries) >= self._max_size:
                self._evict_one()

        self._entries[key] = CacheEntry(value=value, expires_at=now + ttl, created_at=now)

    def has(self, key: str) -> bool:
        """True if a live entry exists. Does not count as a hit or miss."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if entry.expires_at <= self._clock():
            del self._entries[key]
            self._expirations += 1
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def _evict_one(self) -> None:
        # Oldest insertion goes first
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        self._evictions += 1

    def stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            max_size=self._max_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
            hit_rate=self._hits / lookups if lookups else 0.0,
        )
