"""
DexScreener adapter: candidate discovery and market data.

Discovery lists the latest token profiles for a chain. Market analysis picks
the most liquid pair for a token and checks age, liquidity and volume.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from token_screener.config import FilterCriteria
from token_screener.models import Candidate, MarketData, normalize_address

from .base import PROBE_RETRY, SourceAdapter
from .errors import ProviderError

logger = logging.getLogger(__name__)


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _created_at(raw: Any) -> Optional[datetime]:
    """DexScreener reports pairCreatedAt in milliseconds; tolerate seconds."""
    if not raw:
        return None
    ts = float(raw)
    if ts < 1e12:
        ts *= 1000
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc)


class DexScreenerAdapter(SourceAdapter[MarketData]):
    """Discovery source and market-data stage."""

    service = "dexscreener"
    provider = "DexScreener"
    stage = "market"
    base_url = "https://api.dexscreener.com"
    cache_ttl = 60.0
    discovery_ttl = 30.0

    def __init__(self, *args, clock=time.time, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._clock = clock

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover(
        self,
        filters: Optional[FilterCriteria] = None,
        chain: str = "solana",
    ) -> list[Candidate]:
        """
        List newly profiled tokens on `chain`.

        Returns de-duplicated candidates in provider order. Candidates whose
        age is known and already beyond `filters.max_age_hours` are dropped.

        Raises:
            ProviderError: When the provider cannot be reached
        """
        key = f"{self.service}:discovery:{chain}"
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"DexScreener discovery cache hit for {chain}")
            return list(cached)

        data = await self._call("/token-profiles/latest/v1")
        if isinstance(data, dict):
            data = data.get("profiles") or data.get("pairs") or []

        seen: set[str] = set()
        candidates: list[Candidate] = []
        for item in data:
            candidate = self._parse_candidate(item, chain)
            if candidate is None or candidate.address in seen:
                continue
            if (
                filters is not None
                and candidate.age_hours is not None
                and candidate.age_hours > filters.max_age_hours
            ):
                continue
            seen.add(candidate.address)
            candidates.append(candidate)

        logger.info(f"DexScreener discovered {len(candidates)} {chain} candidates")
        self._cache.set(key, tuple(candidates), ttl=self.discovery_ttl)
        return candidates

    def _parse_candidate(self, item: dict, chain: str) -> Optional[Candidate]:
        if str(item.get("chainId", "")).lower() != chain.lower():
            return None

        # Profiles carry tokenAddress; pair listings carry baseToken
        base = item.get("baseToken") or {}
        address = item.get("tokenAddress") or base.get("address")
        if not address:
            return None

        listed_at = _created_at(item.get("pairCreatedAt"))
        age_hours = None
        if listed_at is not None:
            age_hours = (self._clock() - listed_at.timestamp()) / 3600

        return Candidate(
            address=address,
            symbol=base.get("symbol") or item.get("symbol"),
            name=base.get("name") or item.get("description"),
            listed_at=listed_at,
            age_hours=age_hours,
            chain=chain,
        )

    # =========================================================================
    # Market analysis
    # =========================================================================

    async def fetch(self, address: str) -> MarketData:
        data = await self._call(f"/latest/dex/tokens/{address}")
        pairs = [
            pair for pair in (data.get("pairs") or [])
            if normalize_address(pair["baseToken"]["address"]) == address
        ]
        if not pairs:
            raise ProviderError(
                f"no trading pairs found for {address}", status_code=404, service=self.service
            )

        pair = max(pairs, key=lambda p: _to_float((p.get("liquidity") or {}).get("usd")))
        return self._parse_pair(address, pair)

    def _parse_pair(self, address: str, pair: dict) -> MarketData:
        price = _to_float(pair.get("priceUsd"))
        liquidity = _to_float((pair.get("liquidity") or {}).get("usd"))
        listed_at = _created_at(pair.get("pairCreatedAt"))
        age_hours = 0.0
        if listed_at is not None:
            age_hours = max(0.0, (self._clock() - listed_at.timestamp()) / 3600)

        market_cap = _to_float(pair.get("marketCap") or pair.get("fdv"))
        if not market_cap and price > 0:
            # Rough estimate for fresh pairs without supply data
            market_cap = liquidity * 10

        return MarketData(
            address=address,
            symbol=pair["baseToken"].get("symbol", ""),
            name=pair["baseToken"].get("name", ""),
            price_usd=price,
            liquidity_usd=liquidity,
            volume_24h=_to_float((pair.get("volume") or {}).get("h24")),
            market_cap=market_cap,
            age_hours=age_hours,
            price_change_24h=_to_float((pair.get("priceChange") or {}).get("h24")),
            pair_address=pair.get("pairAddress"),
            dex_id=pair.get("dexId"),
        )

    def evaluate(self, data: MarketData, filters: FilterCriteria) -> Optional[str]:
        if data.age_hours < filters.min_age_hours:
            return f"Token too young: {data.age_hours:.1f}h < {filters.min_age_hours}h"
        if data.age_hours > filters.max_age_hours:
            return f"Token too old: {data.age_hours:.1f}h > {filters.max_age_hours}h"
        if data.liquidity_usd < filters.min_liquidity:
            return f"Insufficient liquidity: ${data.liquidity_usd:,.0f} < ${filters.min_liquidity:,.0f}"
        if data.volume_24h < filters.min_volume:
            return f"Insufficient volume: ${data.volume_24h:,.0f} < ${filters.min_volume:,.0f}"
        return None

    def score(self, data: MarketData) -> float:
        score = 50.0
        if data.liquidity_usd > 10_000:
            score += 20
        if data.volume_24h > 5_000:
            score += 15
        if 1 < data.age_hours < 24:
            score += 15
        return score

    async def probe(self) -> None:
        await self._call(
            "/token-profiles/latest/v1",
            retry_config=PROBE_RETRY,
            timeout=self._health_timeout,
        )
