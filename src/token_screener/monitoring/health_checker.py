"""
Health aggregator for the external signal providers.

Probes every adapter concurrently, contains individual failures, and turns
the share of healthy providers into an overall status used as the
scheduler's health gate.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from token_screener.models import utc_now
from token_screener.sources import ServiceHealth, TTLCache

logger = logging.getLogger(__name__)

HEALTH_CACHE_KEY = "health:system:all"


class HealthStatus(str, Enum):
    """Health status levels, best first."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def rank(self) -> int:
        return _RANK[self]

    def at_least(self, other: "HealthStatus") -> bool:
        return self.rank <= other.rank


_RANK = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


class HealthProbe(Protocol):
    """Anything with a service name and a live health probe."""

    service: str

    async def health_check(self) -> ServiceHealth:
        ...


@dataclass
class SystemHealthReport:
    """Overall provider health."""

    overall: HealthStatus
    services: dict[str, ServiceHealth] = field(default_factory=dict)
    healthy_services: int = 0
    total_services: int = 0
    total_latency_ms: float = 0.0
    uptime_seconds: float = 0.0
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def healthy_ratio(self) -> float:
        if self.total_services == 0:
            return 0.0
        return self.healthy_services / self.total_services

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "services": {name: h.to_dict() for name, h in self.services.items()},
            "healthy_services": self.healthy_services,
            "total_services": self.total_services,
            "total_latency_ms": round(self.total_latency_ms, 2),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "checked_at": self.checked_at.isoformat(),
        }


class HealthAggregator:
    """
    Checks every provider and computes an overall status.

    Status thresholds (share of healthy providers):
        - healthy:   ratio >= healthy_ratio (default 0.75)
        - degraded:  ratio >= degraded_ratio (default 0.5)
        - unhealthy: otherwise, or when no providers are registered

    Usage:
        aggregator = HealthAggregator([dex, rugcheck, jupiter, solscan], cache)

        report = await aggregator.check_all()
        if report.overall == HealthStatus.UNHEALTHY:
            ...
    """

    def __init__(
        self,
        adapters: Sequence[HealthProbe],
        cache: Optional[TTLCache] = None,
        cache_ttl: float = 30.0,
        check_timeout: float = 10.0,
        healthy_ratio: float = 0.75,
        degraded_ratio: float = 0.5,
        clock=time.monotonic,
    ) -> None:
        """
        Initialize the aggregator.

        Args:
            adapters: Providers to probe
            cache: Cache for the aggregated report (not cached when None)
            cache_ttl: Seconds a report stays cached
            check_timeout: Per-provider timeout in seconds
            healthy_ratio: Minimum healthy share for HEALTHY
            degraded_ratio: Minimum healthy share for DEGRADED
        """
        if not 0 <= degraded_ratio <= healthy_ratio <= 1:
            raise ValueError(
                f"Require 0 <= degraded_ratio ({degraded_ratio}) "
                f"<= healthy_ratio ({healthy_ratio}) <= 1"
            )
        self._adapters = list(adapters)
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._check_timeout = check_timeout
        self._healthy_ratio = healthy_ratio
        self._degraded_ratio = degraded_ratio
        self._clock = clock
        self._started_at = clock()

    @property
    def uptime_seconds(self) -> float:
        return self._clock() - self._started_at

    def uptime_formatted(self) -> str:
        """Uptime as e.g. '2d 3h 14m'."""
        total = int(self.uptime_seconds)
        days, rem = divmod(total, 86_400)
        hours, rem = divmod(rem, 3_600)
        minutes, seconds = divmod(rem, 60)
        if days:
            return f"{days}d {hours}h {minutes}m"
        if hours:
            return f"{hours}h {minutes}m"
        if minutes:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    def classify(self, healthy: int, total: int) -> HealthStatus:
        if total == 0:
            return HealthStatus.UNHEALTHY
        ratio = healthy / total
        if ratio >= self._healthy_ratio:
            return HealthStatus.HEALTHY
        if ratio >= self._degraded_ratio:
            return HealthStatus.DEGRADED
        return HealthStatus.UNHEALTHY

    async def _check_one(self, adapter: HealthProbe) -> ServiceHealth:
        """Probe one adapter; timeouts and exceptions become unhealthy results."""
        name = getattr(adapter, "service", type(adapter).__name__)
        started = time.monotonic()
        try:
            return await asyncio.wait_for(adapter.health_check(), timeout=self._check_timeout)
        except asyncio.TimeoutError:
            message = f"Health check timed out after {self._check_timeout}s"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = f"Health check error: {e}"

        logger.error(f"{name}: {message}")
        return ServiceHealth(
            service=name,
            healthy=False,
            latency_ms=(time.monotonic() - started) * 1000,
            endpoint=getattr(adapter, "base_url", ""),
            error=message,
        )

    async def check_all(self, use_cache: bool = True) -> SystemHealthReport:
        """
        Probe every provider concurrently.

        Args:
            use_cache: Serve a report younger than cache_ttl if one exists
        """
        if use_cache and self._cache is not None:
            cached = self._cache.get(HEALTH_CACHE_KEY)
            if cached is not None:
                return cached

        results = await asyncio.gather(*(self._check_one(a) for a in self._adapters))
        services = {health.service: health for health in results}
        healthy = sum(1 for health in results if health.healthy)

        report = SystemHealthReport(
            overall=self.classify(healthy, len(results)),
            services=services,
            healthy_services=healthy,
            total_services=len(results),
            total_latency_ms=sum(health.latency_ms for health in results),
            uptime_seconds=self.uptime_seconds,
        )

        if report.overall != HealthStatus.HEALTHY:
            unhealthy = [name for name, h in services.items() if not h.healthy]
            logger.warning(f"Provider health {report.overall.value}: unhealthy={unhealthy}")

        if self._cache is not None:
            self._cache.set(HEALTH_CACHE_KEY, report, ttl=self._cache_ttl)
        return report

    async def check_service(self, name: str) -> ServiceHealth:
        """
        Probe a single provider by service name.

        Raises:
            KeyError: If no adapter with that name is registered
        """
        for adapter in self._adapters:
            if getattr(adapter, "service", None) == name:
                return await self._check_one(adapter)
        raise KeyError(f"Unknown service: {name}")
