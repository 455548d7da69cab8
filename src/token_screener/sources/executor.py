"""
Rate-limited executor with exponential backoff.

Wraps every outbound provider call:
    - Per-service minimum interval between physical calls
    - Retry with exponential backoff plus jitter on transient failures
    - Immediate propagation of non-retryable failures
    - Per-service stats (attempts, retries, cumulative backoff)

Only the caller of a service waits for that service's interval; other
services proceed independently.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import ExhaustedRetries, RateLimitExceeded, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters. Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: float = 0.1

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError(f"backoff_factor must be >= 1, got {self.backoff_factor}")

    def delay_for(self, attempt: int, jitter_fraction: float = 0.0) -> float:
        """
        Delay before retry number `attempt` (0-based).

        `base * factor**attempt` plus `jitter_fraction * jitter` of that, clamped
        to the next attempt's unjittered delay so delays never shrink and
        never exceed max_delay.
        """
        delay = self._capped(attempt)
        return min(delay + delay * self.jitter * jitter_fraction, self._capped(attempt + 1))

    def _capped(self, attempt: int) -> float:
        return min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)


# Minimum seconds between physical calls, per provider
DEFAULT_SERVICE_INTERVALS: dict[str, float] = {
    "dexscreener": 1.0,
    "rugcheck": 0.2,
    "jupiter": 0.2,
    "solscan": 0.2,
}


@dataclass
class RateLimiterState:
    """Mutable per-service state. Only the executor touches it."""

    last_call_at: Optional[float] = None
    current_backoff: float = 0.0
    outstanding: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


@dataclass
class ServiceStats:
    """Counters reported by get_stats()."""

    calls: int = 0
    attempts: int = 0
    retries: int = 0
    failures: int = 0
    cumulative_backoff: float = 0.0
    current_backoff: float = 0.0
    outstanding: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RateLimitedExecutor:
    """
    Per-service throttling and retry wrapper.

    Usage:
        executor = RateLimitedExecutor()

        data = await executor.execute_with_backoff(
            "rugcheck",
            lambda: client.fetch_report(address),
        )

    The clock, sleep and jitter source are injectable so tests can run
    without real waiting.
    """

    def __init__(
        self,
        intervals: Optional[dict[str, float]] = None,
        default_interval: float = 0.2,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self._intervals = dict(DEFAULT_SERVICE_INTERVALS)
        if intervals:
            self._intervals.update(intervals)
        self._default_interval = default_interval
        self._retry_config = retry_config or RetryConfig()
        self._clock = clock
        self._sleep = sleep
        self._jitter = jitter

        self._states: dict[str, RateLimiterState] = {}
        self._stats: dict[str, ServiceStats] = {}

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    def set_retry_config(self, retry_config: RetryConfig) -> None:
        """Replace the default retry policy. Calls already retrying keep theirs."""
        self._retry_config = retry_config
        logger.info(f"Retry policy updated: max_retries={retry_config.max_retries}")

    def interval_for(self, service: str) -> float:
        return self._intervals.get(service, self._default_interval)

    def _state(self, service: str) -> RateLimiterState:
        state = self._states.get(service)
        if state is None:
            state = RateLimiterState()
            self._states[service] = state
            self._stats[service] = ServiceStats()
        return state

    async def wait_for_slot(self, service: str) -> None:
        """
        Block until the service's minimum interval has elapsed.

        Callers of the same service are serialized on a per-service lock,
        so N calls take at least (N-1) * interval.
        """
        state = self._state(service)
        interval = self.interval_for(service)

        async with state.lock:
            if state.last_call_at is not None:
                wait_time = interval - (self._clock() - state.last_call_at)
                if wait_time > 0:
                    logger.debug(f"{service}: throttling for {wait_time:.3f}s")
                    await self._sleep(wait_time)
            state.last_call_at = self._clock()

    async def execute_with_backoff(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        retry_config: Optional[RetryConfig] = None,
    ) -> T:
        """
        Run `operation` with throttling and retries.

        Args:
            service: Service key used for throttling and stats
            operation: Zero-argument callable returning an awaitable
            retry_config: Override for this call (e.g. zero retries for probes)

        Returns:
            The operation's result

        Raises:
            ExhaustedRetries: When every attempt failed with a retryable error
            Exception: Any non-retryable error, unchanged and without retry
        """
        config = retry_config or self._retry_config
        state = self._state(service)
        stats = self._stats[service]
        stats.calls += 1

        last_error: Optional[BaseException] = None
        attempts = 0

        for attempt in range(config.max_retries + 1):
            await self.wait_for_slot(service)

            attempts += 1
            stats.attempts += 1
            state.outstanding += 1
            stats.outstanding = state.outstanding
            try:
                result = await operation()
            except (TransientProviderError, asyncio.TimeoutError) as e:
                last_error = e
            except asyncio.CancelledError:
                raise
            except Exception:
                stats.failures += 1
                raise
            else:
                state.current_backoff = 0.0
                stats.current_backoff = 0.0
                return result
            finally:
                state.outstanding -= 1
                stats.outstanding = state.outstanding

            if attempt >= config.max_retries:
                break

            delay = config.delay_for(attempt, self._jitter())
            if isinstance(last_error, RateLimitExceeded) and last_error.retry_after:
                delay = max(delay, min(last_error.retry_after, config.max_delay))

            state.current_backoff = delay
            stats.current_backoff = delay
            stats.retries += 1
            stats.cumulative_backoff += delay
            logger.warning(
                f"{service}: {last_error}, retry {attempt + 1}/{config.max_retries} "
                f"in {delay:.2f}s"
            )
            await self._sleep(delay)

        stats.failures += 1
        raise ExhaustedRetries(service, attempts, last_error)

    def get_stats(self, service: str) -> ServiceStats:
        self._state(service)
        return self._stats[service]

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {service: stats.to_dict() for service, stats in self._stats.items()}

    def reset(self, service: Optional[str] = None) -> None:
        """Forget throttling state and stats for one service, or all."""
        if service is None:
            self._states.clear()
            self._stats.clear()
            return
        self._states.pop(service, None)
        self._stats.pop(service, None)
