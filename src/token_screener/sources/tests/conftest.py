"""
Test fixtures for the sources layer.

IMPORTANT: All provider calls must be mocked.
Never hit real DexScreener, RugCheck, Jupiter or Solscan APIs in tests.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from token_screener.config import FilterCriteria
from token_screener.sources import (
    DexScreenerAdapter,
    JupiterAdapter,
    RateLimitedExecutor,
    RetryConfig,
    RugCheckAdapter,
    SolscanAdapter,
    TTLCache,
)

# Fixed wall-clock time used for token ages
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW_TS = NOW.timestamp()

TOKEN_ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER_ADDRESS = "9wFFyRfZBsuAha4YcuxcXLKwMxJR43S7fPfQLusDBzvT"


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks run, like a real sleep would
        await asyncio.sleep(0)


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture
def clock():
    """Controllable monotonic clock."""
    return FakeClock()


@pytest.fixture
def cache(clock):
    """TTL cache driven by the fake clock."""
    return TTLCache(default_ttl=300.0, clock=clock)


@pytest.fixture
def executor(clock):
    """Executor that never really sleeps and has no jitter."""
    return RateLimitedExecutor(
        retry_config=RetryConfig(max_retries=3, base_delay=1.0, max_delay=30.0),
        clock=clock,
        sleep=clock.sleep,
        jitter=lambda: 0.0,
    )


@pytest.fixture
def filters():
    """Default filter criteria."""
    return FilterCriteria()


# =============================================================================
# Adapter Fixtures
# =============================================================================


@pytest.fixture
def dexscreener(executor, cache):
    return DexScreenerAdapter(executor, cache, clock=lambda: NOW_TS)


@pytest.fixture
def rugcheck(executor, cache):
    return RugCheckAdapter(executor, cache)


@pytest.fixture
def jupiter(executor, cache):
    """Jupiter adapter with the remote blacklist disabled."""
    return JupiterAdapter(executor, cache, load_blacklist=False)


@pytest.fixture
def solscan(executor, cache):
    return SolscanAdapter(executor, cache)


# =============================================================================
# Provider Payload Fixtures
# =============================================================================


def make_pair(
    address: str = TOKEN_ADDRESS,
    liquidity: float = 25_000,
    volume: float = 12_000,
    age_hours: float = 6.0,
    symbol: str = "GOOD",
    pair_address: str = "PAIR1",
) -> dict:
    return {
        "chainId": "solana",
        "dexId": "raydium",
        "pairAddress": pair_address,
        "baseToken": {"address": address, "symbol": symbol, "name": "Good Token"},
        "priceUsd": "0.0012",
        "liquidity": {"usd": liquidity},
        "volume": {"h24": volume},
        "priceChange": {"h24": 5.5},
        "marketCap": 120_000,
        "pairCreatedAt": int((NOW_TS - age_hours * 3600) * 1000),
    }


@pytest.fixture
def pair_factory():
    return make_pair


@pytest.fixture
def clean_report():
    """RugCheck report with no risk findings."""
    return {
        "mint": TOKEN_ADDRESS,
        "mintAuthority": None,
        "freezeAuthority": None,
        "tokenMeta": {"name": "Good Token", "symbol": "GOOD"},
        "topHolders": [{"address": f"holder{i}", "pct": 3.0} for i in range(10)],
        "markets": [{"lp": {"lpLockedPct": 95.0}}],
        "totalHolders": 500,
    }


@pytest.fixture
def risky_report():
    """RugCheck report that fails every security check."""
    return {
        "mint": TOKEN_ADDRESS,
        "mintAuthority": "MintAuth1111111111111111111111111111111111",
        "freezeAuthority": "FreezeAuth111111111111111111111111111111111",
        "tokenMeta": {"name": "Rocket", "symbol": "RKT"},
        "topHolders": [{"address": f"holder{i}", "pct": 7.0} for i in range(10)],
        "markets": [{"lp": {"lpLockedPct": 0.0}}],
        "totalHolders": 200,
    }


def make_holders(amounts: list[float], prefix: str = "Wallet") -> dict:
    return {
        "total": len(amounts),
        "data": [
            {"owner": f"{prefix}{i:02d}abc", "amount": amount}
            for i, amount in enumerate(amounts)
        ],
    }


@pytest.fixture
def holders_factory():
    return make_holders
