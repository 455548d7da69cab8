"""
Common base for the external signal source adapters.

Every adapter wraps one provider and follows the same analyze flow:

    cache lookup -> executor-wrapped fetch -> typed payload
        -> adapter-local filter predicate -> sub-score -> StageResult

Provider failures never escape `analyze`. They become an UNAVAILABLE
StageResult, which the pipeline treats as a rejection.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

import aiohttp

from token_screener.config import FilterCriteria
from token_screener.models import StageResult, normalize_address, utc_now

from .cache import TTLCache
from .errors import ProviderError, RateLimitExceeded, TransientProviderError
from .executor import RateLimitedExecutor, RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = "token-screener/0.1.0"

# Health probes: one live attempt, no retries
PROBE_RETRY = RetryConfig(max_retries=0, base_delay=0.0, max_delay=0.0)


@dataclass
class ServiceHealth:
    """Result of one live health probe against a provider."""

    service: str
    healthy: bool
    latency_ms: float
    endpoint: str
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "healthy": self.healthy,
            "latency_ms": round(self.latency_ms, 2),
            "endpoint": self.endpoint,
            "error": self.error,
            "checked_at": self.checked_at.isoformat(),
        }


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class SourceAdapter(ABC, Generic[T]):
    """
    Base class for a provider adapter.

    Subclasses set the class attributes and implement `fetch`, `evaluate`
    and `score`. They may override `probe` for a cheaper health call.

    Usage:
        async with RugCheckAdapter(executor, cache) as adapter:
            result = await adapter.analyze(address, FilterCriteria())
            if result.filtered:
                print(result.filter_reason)
    """

    #: Executor key and cache namespace
    service: str = ""
    #: Human-readable provider name used in reasons and logs
    provider: str = ""
    #: Pipeline stage this adapter fills
    stage: str = ""
    base_url: str = ""
    cache_ttl: float = 300.0

    def __init__(
        self,
        executor: RateLimitedExecutor,
        cache: TTLCache,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 15.0,
        health_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            executor: Shared rate-limited executor
            cache: Shared response cache
            session: Optional aiohttp session (created lazily if not provided)
            timeout: Request timeout in seconds
            health_timeout: Timeout for the health probe in seconds
        """
        self._executor = executor
        self._cache = cache
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._health_timeout = health_timeout

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session if this adapter created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    def cache_key(self, address: str) -> str:
        return f"{self.service}:analysis:{address}"

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _get_json(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        GET `base_url + path` and decode JSON.

        Raises:
            RateLimitExceeded: On 429
            TransientProviderError: On 5xx, timeouts and connection errors
            ProviderError: On other 4xx or an undecodable body
        """
        session = self._ensure_session()
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        request_timeout = aiohttp.ClientTimeout(total=timeout or self._timeout)

        try:
            async with session.get(url, params=params, timeout=request_timeout) as response:
                if response.status == 429:
                    raise RateLimitExceeded(
                        f"{self.provider} rate limit exceeded",
                        retry_after=_parse_retry_after(response.headers.get("Retry-After")),
                        service=self.service,
                    )

                if response.status >= 500:
                    text = await response.text()
                    raise TransientProviderError(
                        f"{self.provider} server error: {response.status} - {text[:200]}",
                        status_code=response.status,
                        service=self.service,
                    )

                # 4xx client errors (except 429) - don't retry
                if response.status >= 400:
                    text = await response.text()
                    raise ProviderError(
                        f"{self.provider} API error: {response.status} - {text[:200]}",
                        status_code=response.status,
                        service=self.service,
                    )

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise ProviderError(
                        f"{self.provider} returned invalid JSON: {e}",
                        status_code=response.status,
                        service=self.service,
                    ) from e

        except asyncio.TimeoutError as e:
            raise TransientProviderError(
                f"{self.provider} request timed out", service=self.service
            ) from e

        except aiohttp.ClientError as e:
            raise TransientProviderError(
                f"{self.provider} request failed: {e}", service=self.service
            ) from e

    async def _call(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Executor-wrapped `_get_json`."""
        return await self._executor.execute_with_backoff(
            self.service,
            lambda: self._get_json(path, params=params, timeout=timeout),
            retry_config=retry_config,
        )

    # =========================================================================
    # Analysis
    # =========================================================================

    @abstractmethod
    async def fetch(self, address: str) -> T:
        """Fetch and transform provider data into the typed payload."""

    @abstractmethod
    def evaluate(self, data: T, filters: FilterCriteria) -> Optional[str]:
        """Return a rejection reason, or None if `data` passes `filters`."""

    @abstractmethod
    def score(self, data: T) -> float:
        """Quality sub-score in [0, 100]."""

    async def analyze(self, address: str, filters: FilterCriteria) -> StageResult[T]:
        """
        Analyze one token address.

        The typed payload is cached for `cache_ttl`; filters are evaluated on
        every call so different criteria never see a stale verdict.
        """
        address = normalize_address(address)
        started = time.monotonic()
        key = self.cache_key(address)

        data = self._cache.get(key)
        if data is not None:
            logger.debug(f"{self.provider} cache hit for {address}")
        else:
            try:
                data = await self.fetch(address)
            except asyncio.CancelledError:
                raise
            except ProviderError as e:
                elapsed = (time.monotonic() - started) * 1000
                logger.warning(f"{self.provider} unavailable for {address}: {e}")
                return StageResult.unavailable(
                    self.stage,
                    f"{self.provider} data unavailable: {e}",
                    error=str(e),
                    processing_time_ms=elapsed,
                )
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                elapsed = (time.monotonic() - started) * 1000
                logger.warning(f"{self.provider} returned malformed data for {address}: {e}")
                return StageResult.unavailable(
                    self.stage,
                    f"{self.provider} data unavailable: malformed response",
                    error=str(e),
                    processing_time_ms=elapsed,
                )
            self._cache.set(key, data, ttl=self.cache_ttl)

        reason = self.evaluate(data, filters)
        elapsed = (time.monotonic() - started) * 1000
        return StageResult.ok(
            self.stage,
            data,
            score=self.score(data),
            filter_reason=reason,
            processing_time_ms=elapsed,
        )

    # =========================================================================
    # Health
    # =========================================================================

    async def probe(self) -> None:
        """One cheap representative call. Raises on failure."""
        await self._call("", retry_config=PROBE_RETRY, timeout=self._health_timeout)

    async def health_check(self) -> ServiceHealth:
        """Live probe, never served from the cache."""
        started = time.monotonic()
        try:
            await self.probe()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            latency = (time.monotonic() - started) * 1000
            logger.warning(f"{self.provider} health check failed: {e}")
            return ServiceHealth(
                service=self.service,
                healthy=False,
                latency_ms=latency,
                endpoint=self.base_url,
                error=str(e),
            )

        return ServiceHealth(
            service=self.service,
            healthy=True,
            latency_ms=(time.monotonic() - started) * 1000,
            endpoint=self.base_url,
        )

    def get_stats(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "executor": self._executor.get_stats(self.service).to_dict(),
            "cache_size": len(self._cache),
        }
