"""
Monitoring layer test fixtures.

Provider adapters are replaced by mocks exposing `service`, `base_url`
and an async `health_check()`.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from token_screener.sources import ServiceHealth, TTLCache


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_probe(service: str, healthy: bool = True, error: Exception = None):
    """Mock adapter whose health_check returns (or raises) a fixed result."""
    adapter = MagicMock()
    adapter.service = service
    adapter.base_url = f"https://{service}.example"
    if error is not None:
        adapter.health_check = AsyncMock(side_effect=error)
    else:
        adapter.health_check = AsyncMock(
            return_value=ServiceHealth(
                service=service,
                healthy=healthy,
                latency_ms=12.5,
                endpoint=adapter.base_url,
                error=None if healthy else "probe failed",
            )
        )
    return adapter


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return TTLCache(default_ttl=60, clock=clock)


@pytest.fixture
def probe_factory():
    return make_probe


@pytest.fixture
def all_healthy():
    """The four providers, all healthy."""
    return [make_probe(name) for name in ("rugcheck", "dexscreener", "jupiter", "solscan")]
