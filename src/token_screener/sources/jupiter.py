"""
Jupiter adapter: routing availability and slippage.

Quotes USDC -> token for several trade sizes. A size Jupiter cannot route
counts as 50% slippage. Routing availability comes from the $500 quote.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from token_screener.config import FilterCriteria
from token_screener.models import RoutingData, normalize_address

from .base import PROBE_RETRY, SourceAdapter
from .errors import ExhaustedRetries, ProviderError

logger = logging.getLogger(__name__)

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOL_MINT = "So11111111111111111111111111111111111111112"

TEST_AMOUNTS_USD = (100, 500, 1000, 5000)
ROUTING_AMOUNT_USD = 500
UNROUTABLE_SLIPPAGE = 50.0
USDC_DECIMALS = 6

TOKEN_LIST_URL = "https://tokens.jup.ag/tokens"
BLACKLIST_TAGS = {"blacklisted", "community-blacklisted"}


class JupiterAdapter(SourceAdapter[RoutingData]):
    """Routing stage."""

    service = "jupiter"
    provider = "Jupiter"
    stage = "routing"
    base_url = "https://quote-api.jup.ag/v6"
    cache_ttl = 120.0

    def __init__(
        self,
        *args,
        blacklist: Optional[Iterable[str]] = None,
        load_blacklist: bool = True,
        **kwargs,
    ) -> None:
        """
        Args:
            blacklist: Token addresses to treat as blacklisted up front
            load_blacklist: Fetch Jupiter's tagged token list on first use
        """
        super().__init__(*args, **kwargs)
        self._blacklist: set[str] = {normalize_address(a) for a in (blacklist or ())}
        self._blacklist_loaded = not load_blacklist
        self._blacklist_lock = asyncio.Lock()

    @property
    def blacklist_size(self) -> int:
        return len(self._blacklist)

    async def ensure_blacklist(self) -> None:
        """Load Jupiter's token blacklist once. Failures are retried on next use."""
        if self._blacklist_loaded:
            return
        async with self._blacklist_lock:
            if self._blacklist_loaded:
                return
            try:
                tokens = await self._call(TOKEN_LIST_URL)
            except ProviderError as e:
                logger.warning(f"Failed to load Jupiter blacklist: {e}")
                return

            for token in tokens or []:
                if BLACKLIST_TAGS.intersection(token.get("tags") or ()):
                    self._blacklist.add(normalize_address(token["address"]))
            self._blacklist_loaded = True
            logger.info(f"Loaded {len(self._blacklist)} blacklisted tokens from Jupiter")

    async def _quote(self, input_mint: str, output_mint: str, amount: int) -> Optional[dict]:
        """
        Fetch one quote. Returns None when Jupiter has no route.

        Raises:
            ExhaustedRetries: When the provider itself is failing
        """
        try:
            return await self._call(
                "/quote",
                params={
                    "inputMint": input_mint,
                    "outputMint": output_mint,
                    "amount": str(amount),
                    "slippageBps": 1000,
                },
            )
        except ExhaustedRetries:
            raise
        except ProviderError as e:
            logger.debug(f"No Jupiter route {input_mint} -> {output_mint} for {amount}: {e}")
            return None

    async def fetch(self, address: str) -> RoutingData:
        await self.ensure_blacklist()

        quotes: dict[int, Optional[dict]] = {}
        for usd in TEST_AMOUNTS_USD:
            quotes[usd] = await self._quote(USDC_MINT, address, usd * 10 ** USDC_DECIMALS)

        return self.build_routing(address, quotes)

    def build_routing(self, address: str, quotes: dict[int, Optional[dict[str, Any]]]) -> RoutingData:
        impacts: list[float] = []
        slippages: list[float] = []
        for quote in quotes.values():
            if quote is None:
                slippages.append(UNROUTABLE_SLIPPAGE)
                continue
            # priceImpactPct is a fraction ("0.0125" == 1.25%)
            impact = abs(float(quote.get("priceImpactPct") or 0)) * 100
            impacts.append(impact)
            slippages.append(impact)

        routing_quote = quotes.get(ROUTING_AMOUNT_USD)
        routing_available = routing_quote is not None
        route_count = len(routing_quote.get("routePlan") or []) if routing_quote else 0

        slippage = sum(slippages) / len(slippages) if slippages else 100.0
        spread = (max(impacts) - min(impacts)) if len(impacts) > 1 else (0.0 if impacts else 100.0)

        return RoutingData(
            address=address,
            routing_available=routing_available,
            route_count=route_count,
            slippage_estimate=slippage,
            spread=spread,
            blacklisted=address in self._blacklist,
        )

    def evaluate(self, data: RoutingData, filters: FilterCriteria) -> Optional[str]:
        if filters.require_routing and not data.routing_available:
            return "No routing available through Jupiter"
        if data.slippage_estimate > filters.max_slippage:
            return f"Slippage too high: {data.slippage_estimate:.2f}% > {filters.max_slippage:g}%"
        if not filters.allow_blacklisted and data.blacklisted:
            return "Token is blacklisted on Jupiter"
        return None

    def score(self, data: RoutingData) -> float:
        if not data.routing_available:
            return 0.0
        score = 60.0
        if data.slippage_estimate < 5:
            score += 25
        elif data.slippage_estimate < 10:
            score += 15
        if not data.blacklisted:
            score += 15
        return score

    async def probe(self) -> None:
        # $1 USDC -> SOL
        await self._call(
            "/quote",
            params={"inputMint": USDC_MINT, "outputMint": SOL_MINT, "amount": "1000000", "slippageBps": 500},
            retry_config=PROBE_RETRY,
            timeout=self._health_timeout,
        )
