"""
Test fixtures for the core layer.

Stage analyzers are scripted fakes: every address passes with a fixed
score unless a test overrides it. Discovery, health and storage are mocks.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from token_screener.config import AggregatorConfig, FilterCriteria, PipelineConfig
from token_screener.core import PipelineOrchestrator, TokenAggregator, TokenRegistry
from token_screener.models import Candidate, MarketData, StageResult
from token_screener.monitoring import HealthStatus, SystemHealthReport
from token_screener.sources import RateLimitedExecutor, RetryConfig, ServiceHealth, TTLCache

TOKEN_A = "TokenAaaa1111111111111111111111111111111111"
TOKEN_B = "TokenBbbb2222222222222222222222222222222222"
TOKEN_C = "TokenCccc3333333333333333333333333333333333"


class ScriptedStage:
    """
    Stage analyzer with per-address results.

    Addresses without an override pass with `default_score`.
    """

    def __init__(self, stage: str, default_score: float = 100.0):
        self.stage = stage
        self.default_score = default_score
        self.overrides: dict[str, StageResult] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    def reject(self, address: str, reason: str, score: float = 20.0) -> None:
        self.overrides[address] = StageResult.ok(
            self.stage, self._data(address), score=score, filter_reason=reason
        )

    def unavailable(self, address: str, reason: str) -> None:
        self.overrides[address] = StageResult.unavailable(self.stage, reason)

    def score(self, address: str, score: float) -> None:
        self.overrides[address] = StageResult.ok(self.stage, self._data(address), score=score)

    def _data(self, address: str):
        if self.stage == "market":
            return MarketData(
                address=address,
                symbol=address[:5].upper(),
                name="Scripted",
                price_usd=0.01,
                liquidity_usd=20_000,
                volume_24h=8_000,
                market_cap=200_000,
                age_hours=3.0,
            )
        return {"stage": self.stage, "address": address}

    async def analyze(self, address: str, filters: FilterCriteria) -> StageResult:
        self.calls.append(address)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if address in self.errors:
                raise self.errors[address]
            if address in self.overrides:
                return self.overrides[address]
            return StageResult.ok(self.stage, self._data(address), score=self.default_score)
        finally:
            self.in_flight -= 1


def make_report(healthy: int = 4, total: int = 4) -> SystemHealthReport:
    names = ["rugcheck", "dexscreener", "jupiter", "solscan"][:total]
    services = {
        name: ServiceHealth(service=name, healthy=i < healthy, latency_ms=10.0, endpoint="")
        for i, name in enumerate(names)
    }
    ratio = healthy / total if total else 0
    if ratio >= 0.75:
        overall = HealthStatus.HEALTHY
    elif ratio >= 0.5:
        overall = HealthStatus.DEGRADED
    else:
        overall = HealthStatus.UNHEALTHY
    return SystemHealthReport(
        overall=overall,
        services=services,
        healthy_services=healthy,
        total_services=total,
    )


# =============================================================================
# Pipeline Fixtures
# =============================================================================


@pytest.fixture
def filters():
    return FilterCriteria()


@pytest.fixture
def stages():
    """One scripted analyzer per stage."""
    return {name: ScriptedStage(name) for name in ("security", "market", "routing", "ownership")}


@pytest.fixture
def pipeline_config():
    return PipelineConfig(batch_size=10, max_concurrent=4, timeout_ms=5_000, cache_results=False)


@pytest.fixture
def executor():
    """Executor sharing the pipeline's retry budget; never actually called."""
    return RateLimitedExecutor(retry_config=RetryConfig(max_retries=2, base_delay=0.0))


@pytest.fixture
def pipeline(stages, pipeline_config, executor):
    return PipelineOrchestrator(**stages, config=pipeline_config, executor=executor)


# =============================================================================
# Aggregator Fixtures
# =============================================================================


@pytest.fixture
def report_factory():
    return make_report


@pytest.fixture
def health():
    """Health aggregator mock reporting all providers healthy."""
    mock = MagicMock()
    mock.check_all = AsyncMock(return_value=make_report(4, 4))
    return mock


@pytest.fixture
def discovery():
    """Discovery source returning three fresh candidates."""
    mock = MagicMock()
    mock.discover = AsyncMock(
        return_value=[Candidate(address=a, symbol=a[:5]) for a in (TOKEN_A, TOKEN_B, TOKEN_C)]
    )
    return mock


@pytest.fixture
def store():
    mock = MagicMock()
    mock.store = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def registry():
    return TokenRegistry(TTLCache(default_ttl=60))


@pytest.fixture
def aggregator_config():
    return AggregatorConfig.create(stop_grace_seconds=0.2)


@pytest.fixture
def aggregator(aggregator_config, discovery, pipeline, health, registry, store):
    return TokenAggregator(
        config=aggregator_config,
        discovery=discovery,
        pipeline=pipeline,
        health=health,
        registry=registry,
        store=store,
        drain_seconds=0.2,
    )


@pytest.fixture
def recorded_events(aggregator):
    """Every event the aggregator emits, in order."""
    events = []
    aggregator.events.subscribe(events.append)
    return events
