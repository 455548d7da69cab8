"""
Fixtures for the configuration and entry point tests.
"""
import pytest

SCREENER_ENV_VARS = (
    "SCHEDULE",
    "MAX_TOKENS_PER_RUN",
    "CHAIN",
    "HEALTH_GATE",
    "ENABLE_DATABASE_STORAGE",
    "ENABLE_REAL_TIME_EVENTS",
    "BATCH_SIZE",
    "MAX_CONCURRENT",
    "TIMEOUT_MS",
    "RETRY_ATTEMPTS",
    "MIN_LIQUIDITY",
    "MIN_VOLUME",
    "MIN_AGE_HOURS",
    "MAX_AGE_HOURS",
    "MIN_SAFETY_SCORE",
    "ALLOW_HONEYPOT",
    "REQUIRE_ROUTING",
    "MAX_SLIPPAGE",
    "ALLOW_BLACKLISTED",
    "MAX_CREATOR_RUGS",
    "MAX_TOP_HOLDERS_PERCENTAGE",
    "KNOWN_RUG_CREATORS",
    "DATABASE_URL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without screener settings from the host environment."""
    for name in SCREENER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
