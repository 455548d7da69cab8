"""
Sources Layer - External signal providers.

This module provides:
    - RateLimitedExecutor: Per-service throttling with retry and backoff
    - TTLCache: In-memory cache with per-entry expiry
    - DexScreenerAdapter: Candidate discovery and market data
    - RugCheckAdapter: Security assessment
    - JupiterAdapter: Routing and slippage
    - SolscanAdapter: Holder distribution and creator risk

Error taxonomy:
    - ProviderError: Non-retryable provider failure (4xx, bad payload)
    - TransientProviderError: Timeout, connection error or 5xx (retried)
    - RateLimitExceeded: 429 (retried, honours Retry-After)
    - ExhaustedRetries: Every attempt failed

Adapters never raise out of analyze(); provider failures become an
UNAVAILABLE StageResult.
"""

from .base import PROBE_RETRY, ServiceHealth, SourceAdapter
from .cache import CacheStats, TTLCache
from .dexscreener import DexScreenerAdapter
from .errors import (
    ExhaustedRetries,
    ProviderError,
    RateLimitExceeded,
    TransientProviderError,
)
from .executor import (
    DEFAULT_SERVICE_INTERVALS,
    RateLimitedExecutor,
    RateLimiterState,
    RetryConfig,
    ServiceStats,
)
from .jupiter import JupiterAdapter
from .rugcheck import RugCheckAdapter
from .solscan import CreatorRiskStrategy, KnownCreatorRiskStrategy, SolscanAdapter

__all__ = [
    # Executor
    "RateLimitedExecutor",
    "RateLimiterState",
    "RetryConfig",
    "ServiceStats",
    "DEFAULT_SERVICE_INTERVALS",
    # Cache
    "TTLCache",
    "CacheStats",
    # Adapters
    "SourceAdapter",
    "ServiceHealth",
    "PROBE_RETRY",
    "DexScreenerAdapter",
    "RugCheckAdapter",
    "JupiterAdapter",
    "SolscanAdapter",
    "CreatorRiskStrategy",
    "KnownCreatorRiskStrategy",
    # Errors
    "ProviderError",
    "TransientProviderError",
    "RateLimitExceeded",
    "ExhaustedRetries",
]
