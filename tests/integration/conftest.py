"""
Integration test fixtures.

These fixtures wire the real adapters, health aggregator, pipeline and
aggregator together. Only the HTTP layer is faked: every adapter's
`_get_json` answers from in-memory provider data held by `FakeProviders`.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from token_screener.config import AggregatorConfig, PipelineConfig
from token_screener.core import PipelineOrchestrator, TokenAggregator, TokenRegistry
from token_screener.monitoring import HealthAggregator
from token_screener.sources import (
    DexScreenerAdapter,
    JupiterAdapter,
    KnownCreatorRiskStrategy,
    ProviderError,
    RateLimitedExecutor,
    RetryConfig,
    RugCheckAdapter,
    SolscanAdapter,
    TransientProviderError,
    TTLCache,
)
from token_screener.sources.jupiter import SOL_MINT

# Mark all tests in this directory as integration tests
pytestmark = pytest.mark.integration

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
NOW_TS = NOW.timestamp()


class FakeProviders:
    """
    In-memory stand-in for the four provider APIs.

    Tokens are registered with their per-provider payloads; anything not
    registered answers 404. A service listed in `down` fails every call
    with a 503.
    """

    def __init__(self):
        self.profiles: list[dict] = []
        self.pairs: dict[str, list[dict]] = {}
        self.reports: dict[str, dict] = {}
        self.impacts: dict[str, list[float]] = {}
        self.meta: dict[str, dict] = {}
        self.holders: dict[str, dict] = {}
        self.down: set[str] = set()

    def add_token(
        self,
        address: str,
        symbol: str = "GOOD",
        safety: str = "clean",
        liquidity: float = 25_000,
        impact: float = 0.01,
        holders: int = 20,
        creator: str = "CreatorWa11et1111111111111111111111111111111",
    ) -> None:
        self.profiles.append({"chainId": "solana", "tokenAddress": address})
        self.pairs[address] = [
            {
                "chainId": "solana",
                "dexId": "raydium",
                "pairAddress": f"pair-{address[:6]}",
                "baseToken": {"address": address, "symbol": symbol, "name": f"{symbol} Token"},
                "priceUsd": "0.0012",
                "liquidity": {"usd": liquidity},
                "volume": {"h24": 12_000},
                "priceChange": {"h24": 4.0},
                "marketCap": 150_000,
                "pairCreatedAt": int((NOW_TS - 6 * 3600) * 1000),
            }
        ]
        clean = safety == "clean"
        self.reports[address] = {
            "mint": address,
            "mintAuthority": None if clean else "MintAuth1111111111111111111111111111111111",
            "freezeAuthority": None if clean else "FreezeAuth111111111111111111111111111111111",
            "tokenMeta": {"name": f"{symbol} Token", "symbol": symbol},
            "topHolders": [
                {"address": f"holder{i}", "pct": 3.0 if clean else 7.0} for i in range(10)
            ],
            "markets": [{"lp": {"lpLockedPct": 95.0 if clean else 0.0}}],
            "totalHolders": 500,
        }
        self.impacts[address] = [impact] * 4
        self.meta[address] = {"creator": creator}
        self.holders[address] = {
            "total": holders,
            "data": [{"owner": f"Owner{i:02d}xyz", "amount": 100} for i in range(holders)],
        }

    def _fail(self, service: str, path: str):
        if service in self.down:
            raise TransientProviderError(f"{service} unavailable", status_code=503, service=service)
        raise ProviderError(f"{service}: not found {path}", status_code=404, service=service)

    def router(self, service: str):
        """Build the `_get_json` side effect for one adapter."""

        async def get_json(path, params=None, timeout=None):
            if service in self.down:
                self._fail(service, path)
            params = params or {}

            if service == "dexscreener":
                if path == "/token-profiles/latest/v1":
                    return list(self.profiles)
                address = path.rsplit("/", 1)[-1]
                return {"pairs": self.pairs.get(address, [])}

            if service == "rugcheck":
                address = path.split("/")[2]
                if address in self.reports:
                    return self.reports[address]
                if path.endswith("/report/summary"):
                    return {"score": 1}

            if service == "jupiter":
                if path.startswith("http"):
                    return []
                output = params.get("outputMint")
                if output == SOL_MINT:
                    return {"priceImpactPct": "0", "routePlan": [{}]}
                impacts = self.impacts.get(output)
                if impacts is not None:
                    return {"priceImpactPct": str(impacts[0]), "routePlan": [{}, {}]}

            if service == "solscan":
                address = params.get("tokenAddress")
                if path == "/token/meta":
                    return self.meta.get(address, {"creator": None})
                if path == "/token/holders" and address in self.holders:
                    return self.holders[address]

            self._fail(service, path)

        return get_json


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def cache():
    return TTLCache(default_ttl=300.0)


@pytest.fixture
def executor():
    """No throttling and near-instant retries."""
    return RateLimitedExecutor(
        intervals={"dexscreener": 0.0, "rugcheck": 0.0, "jupiter": 0.0, "solscan": 0.0},
        default_interval=0.0,
        retry_config=RetryConfig(max_retries=1, base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def adapters(providers, executor, cache):
    """The four real adapters with their HTTP layer faked."""
    built = {
        "security": RugCheckAdapter(executor, cache),
        "market": DexScreenerAdapter(executor, cache, clock=lambda: NOW_TS),
        "routing": JupiterAdapter(executor, cache),
        "ownership": SolscanAdapter(
            executor, cache, creator_strategy=KnownCreatorRiskStrategy()
        ),
    }
    for adapter in built.values():
        adapter._get_json = AsyncMock(side_effect=providers.router(adapter.service))
    return built


@pytest.fixture
def health(adapters, cache):
    return HealthAggregator(list(adapters.values()), cache=cache, cache_ttl=30.0)


@pytest.fixture
def pipeline(adapters, cache):
    config = PipelineConfig(timeout_ms=5_000)
    return PipelineOrchestrator(**adapters, config=config, cache=cache)


@pytest.fixture
def registry(cache):
    return TokenRegistry(cache)


@pytest.fixture
def store():
    mock = MagicMock()
    mock.store = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def aggregator(adapters, pipeline, health, registry, store):
    return TokenAggregator(
        config=AggregatorConfig(),
        discovery=adapters["market"],
        pipeline=pipeline,
        health=health,
        registry=registry,
        store=store,
    )
