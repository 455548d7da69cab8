"""
Processed and blacklisted token sets.

Owned by the scheduler and persisted through the TTL cache with a 24h
horizon, so a restart does not immediately reprocess recent candidates.
A cache miss on load is an empty set.

Invariant: an address is in at most one of the two sets.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from token_screener.models import normalize_address
from token_screener.sources import TTLCache

logger = logging.getLogger(__name__)

PROCESSED_KEY = "aggregator:processed-tokens"
BLACKLISTED_KEY = "aggregator:blacklisted-tokens"


class TokenRegistry:
    """Processed/blacklist bookkeeping with explicit load() and save()."""

    def __init__(self, cache: TTLCache, ttl: float = 86_400.0) -> None:
        self._cache = cache
        self._ttl = ttl
        self._processed: set[str] = set()
        self._blacklisted: dict[str, str] = {}

    def load(self) -> None:
        """Replace in-memory state with whatever the cache still holds."""
        processed = self._cache.get(PROCESSED_KEY) or ()
        blacklisted = self._cache.get(BLACKLISTED_KEY) or {}
        self._blacklisted = dict(blacklisted)
        self._processed = {a for a in processed if a not in self._blacklisted}
        logger.info(
            f"Loaded {len(self._processed)} processed and "
            f"{len(self._blacklisted)} blacklisted tokens"
        )

    def save(self) -> None:
        self._cache.set(PROCESSED_KEY, sorted(self._processed), ttl=self._ttl)
        self._cache.set(BLACKLISTED_KEY, dict(self._blacklisted), ttl=self._ttl)

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    @property
    def blacklisted_count(self) -> int:
        return len(self._blacklisted)

    def is_processed(self, address: str) -> bool:
        return normalize_address(address) in self._processed

    def is_blacklisted(self, address: str) -> bool:
        return normalize_address(address) in self._blacklisted

    def is_known(self, address: str) -> bool:
        address = normalize_address(address)
        return address in self._processed or address in self._blacklisted

    def filter_new(self, addresses: Iterable[str]) -> list[str]:
        """Addresses in neither set, de-duplicated, order preserved."""
        seen: set[str] = set()
        fresh: list[str] = []
        for address in addresses:
            address = normalize_address(address)
            if address in seen or self.is_known(address):
                continue
            seen.add(address)
            fresh.append(address)
        return fresh

    def mark_processed(self, addresses: Iterable[str]) -> int:
        """Add addresses to the processed set. Blacklisted ones are left alone."""
        added = 0
        for address in addresses:
            address = normalize_address(address)
            if address in self._blacklisted or address in self._processed:
                continue
            self._processed.add(address)
            added += 1
        return added

    def blacklist(self, address: str, reason: str = "") -> str:
        address = normalize_address(address)
        self._processed.discard(address)
        self._blacklisted[address] = reason
        return address

    def unblacklist(self, address: str) -> bool:
        return self._blacklisted.pop(normalize_address(address), None) is not None

    def blacklist_reason(self, address: str) -> Optional[str]:
        return self._blacklisted.get(normalize_address(address))

    def clear(self) -> None:
        self._processed.clear()
        self._blacklisted.clear()
