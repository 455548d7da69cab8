"""
Pipeline orchestrator.

Runs one candidate through the four stages in a fixed order, cheapest and
most decisive first:

    security (RugCheck) -> market (DexScreener) -> routing (Jupiter)
        -> ownership (Solscan)

The first filtered stage short-circuits: later stages make no provider call
and contribute nothing to the score. Many candidates run through a bounded
worker pool. Token-level failures (timeout, unexpected error, cancellation)
become failed analyses; they never abort a batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from token_screener.config import ConfigurationError, FilterCriteria, PipelineConfig
from token_screener.models import (
    Candidate,
    CombinedAnalysis,
    StageResult,
    normalize_address,
    utc_now,
)
from token_screener.sources import RateLimitedExecutor, TTLCache

logger = logging.getLogger(__name__)

STAGE_ORDER: tuple[str, ...] = ("security", "market", "routing", "ownership")

# Maximum points per stage; sums to 100
STAGE_WEIGHTS: dict[str, float] = {
    "security": 30.0,
    "market": 25.0,
    "routing": 25.0,
    "ownership": 20.0,
}

# Prefixes for failed_filters entries
STAGE_LABELS: dict[str, str] = {
    "security": "Security",
    "market": "DEX",
    "routing": "Routing",
    "ownership": "Creator",
}


class TimeoutExceeded(Exception):
    """A token's stages collectively exceeded the per-token budget."""

    def __init__(self, address: str, timeout: float):
        super().__init__(f"{address}: timed out after {timeout:g}s")
        self.address = address
        self.timeout = timeout


class StageAnalyzer(Protocol):
    """The adapter surface the pipeline depends on."""

    async def analyze(self, address: str, filters: FilterCriteria) -> StageResult[Any]:
        ...


@dataclass
class PipelineStats:
    """Rolling pipeline counters."""

    tokens_processed: int = 0
    tokens_passed: int = 0
    tokens_filtered: int = 0
    success_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    error_count: int = 0
    timeouts: int = 0
    last_processed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokens_processed": self.tokens_processed,
            "tokens_passed": self.tokens_passed,
            "tokens_filtered": self.tokens_filtered,
            "success_rate": round(self.success_rate, 2),
            "average_processing_time_ms": round(self.average_processing_time_ms, 2),
            "error_count": self.error_count,
            "timeouts": self.timeouts,
            "last_processed_at": self.last_processed_at.isoformat() if self.last_processed_at else None,
        }


def compute_overall_score(analysis: CombinedAnalysis) -> float:
    """Weighted sum over passing stages, clamped to [0, 100]."""
    total = 0.0
    for stage, result in analysis.stage_results().items():
        if result is not None and result.passed:
            total += STAGE_WEIGHTS[stage] * result.score / 100.0
    return max(0.0, min(100.0, total))


class PipelineOrchestrator:
    """
    Sequential per-token stages, concurrent tokens.

    Usage:
        pipeline = PipelineOrchestrator(
            security=rugcheck, market=dexscreener,
            routing=jupiter, ownership=solscan,
            config=PipelineConfig(max_concurrent=5),
        )

        analysis = await pipeline.process_token(address, filters)
        analyses = await pipeline.process_batch(addresses, filters)
    """

    PROCESSING_TIME_WINDOW = 1000

    def __init__(
        self,
        security: StageAnalyzer,
        market: StageAnalyzer,
        routing: StageAnalyzer,
        ownership: StageAnalyzer,
        config: Optional[PipelineConfig] = None,
        cache: Optional[TTLCache] = None,
        executor: Optional[RateLimitedExecutor] = None,
    ) -> None:
        self._stages: dict[str, StageAnalyzer] = {
            "security": security,
            "market": market,
            "routing": routing,
            "ownership": ownership,
        }
        self._config = config or PipelineConfig()
        self._cache = cache
        self._executor = executor
        self._stats = PipelineStats()
        self._processing_times: deque[float] = deque(maxlen=self.PROCESSING_TIME_WINDOW)

    @property
    def config(self) -> PipelineConfig:
        return self._config

    # =========================================================================
    # Single token
    # =========================================================================

    def _cache_key(self, address: str, filters: FilterCriteria) -> str:
        return f"pipeline:analysis:{address}:{hash(filters):x}"

    async def process_token(
        self,
        address: str,
        filters: FilterCriteria,
        candidate: Optional[Candidate] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CombinedAnalysis:
        """
        Run one token through every stage, stopping at the first rejection.

        Never raises for token-level problems: a timeout, an unexpected error
        or a cancellation produces a failed CombinedAnalysis. Stage results
        gathered before a timeout are kept.
        """
        address = normalize_address(address)

        use_cache = self._config.cache_results and self._cache is not None
        if use_cache:
            cached = self._cache.get(self._cache_key(address, filters))
            if cached is not None:
                logger.debug(f"Pipeline cache hit for {address}")
                return cached

        started = time.monotonic()
        analysis = CombinedAnalysis(address=address, candidate=candidate)
        timeout = self._config.timeout_seconds
        failed = False

        try:
            await self._run_with_timeout(analysis, filters, cancel_event, timeout)
        except TimeoutExceeded as e:
            failed = True
            self._stats.timeouts += 1
            self._mark_incomplete(analysis)
            analysis.failed_filters.append(f"Pipeline: timed out after {e.timeout:g}s")
            logger.warning(f"Token processing failed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failed = True
            self._stats.error_count += 1
            self._mark_incomplete(analysis)
            analysis.failed_filters.append(f"Pipeline: {e}")
            logger.exception(f"Unexpected pipeline error for {address}: {e}")

        analysis.overall_score = compute_overall_score(analysis)
        analysis.passed = (
            not analysis.failed_filters
            and analysis.overall_score >= self._config.pass_threshold
        )
        analysis.processing_time_ms = (time.monotonic() - started) * 1000
        analysis.timestamp = utc_now()

        self._record(analysis)

        cancelled = cancel_event is not None and cancel_event.is_set()
        if use_cache and not failed and not cancelled:
            self._cache.set(
                self._cache_key(address, filters), analysis, ttl=self._config.cache_ttl
            )

        logger.info(
            f"Pipeline completed for {address}: passed={analysis.passed} "
            f"score={analysis.overall_score:.1f} time={analysis.processing_time_ms:.0f}ms"
        )
        return analysis

    async def _run_with_timeout(
        self,
        analysis: CombinedAnalysis,
        filters: FilterCriteria,
        cancel_event: Optional[asyncio.Event],
        timeout: float,
    ) -> None:
        """
        Run the stages under the per-token deadline.

        Raises:
            TimeoutExceeded: If the deadline passes; `analysis` keeps what finished
        """
        try:
            await asyncio.wait_for(self._run_stages(analysis, filters, cancel_event), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(analysis.address, timeout) from None

    async def _run_stages(
        self,
        analysis: CombinedAnalysis,
        filters: FilterCriteria,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        """Fill `analysis` stage by stage in place, so partial results survive a timeout."""
        for index, stage in enumerate(STAGE_ORDER):
            if cancel_event is not None and cancel_event.is_set():
                analysis.skipped_stages.extend(STAGE_ORDER[index:])
                analysis.failed_filters.append("Pipeline: cancelled")
                return

            result = await self._stages[stage].analyze(analysis.address, filters)
            setattr(analysis, stage, result)
            logger.debug(
                f"{analysis.address} {stage}: filtered={result.filtered} "
                f"score={result.score:.0f} ({result.processing_time_ms:.0f}ms)"
            )

            if result.filtered:
                reason = result.filter_reason or "rejected"
                analysis.failed_filters.append(f"{STAGE_LABELS[stage]}: {reason}")
                analysis.skipped_stages.extend(STAGE_ORDER[index + 1:])
                return

    @staticmethod
    def _mark_incomplete(analysis: CombinedAnalysis) -> None:
        analysis.skipped_stages = [
            stage for stage in STAGE_ORDER if getattr(analysis, stage) is None
        ]

    def _record(self, analysis: CombinedAnalysis) -> None:
        stats = self._stats
        stats.tokens_processed += 1
        if analysis.passed:
            stats.tokens_passed += 1
        else:
            stats.tokens_filtered += 1
        stats.success_rate = stats.tokens_passed / stats.tokens_processed * 100
        stats.last_processed_at = analysis.timestamp

        self._processing_times.append(analysis.processing_time_ms)
        stats.average_processing_time_ms = sum(self._processing_times) / len(self._processing_times)

    # =========================================================================
    # Batches
    # =========================================================================

    async def process_batch(
        self,
        addresses: Sequence[str],
        filters: FilterCriteria,
        candidates: Optional[Mapping[str, Candidate]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[CombinedAnalysis]:
        """
        Process many tokens with at most `max_concurrent` in flight.

        Addresses are de-duplicated, then split into chunks of `batch_size`.
        Results come back in no particular order. Once `cancel_event` is set
        no further token starts; tokens in flight stop at their next stage.
        """
        unique: list[str] = []
        seen: set[str] = set()
        for address in addresses:
            address = normalize_address(address)
            if address not in seen:
                seen.add(address)
                unique.append(address)

        candidates = candidates or {}
        batch_size = self._config.batch_size
        results: list[CombinedAnalysis] = []

        logger.info(f"Processing batch of {len(unique)} tokens")
        for start in range(0, len(unique), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Batch cancelled before all chunks started")
                break
            chunk = unique[start:start + batch_size]
            results.extend(await self._run_chunk(chunk, filters, candidates, cancel_event))
            logger.debug(f"Chunk {start // batch_size + 1} completed ({len(chunk)} tokens)")

        passed = sum(1 for a in results if a.passed)
        logger.info(f"Batch completed: {len(results)} processed, {passed} passed")
        return results

    async def _run_chunk(
        self,
        chunk: list[str],
        filters: FilterCriteria,
        candidates: Mapping[str, Candidate],
        cancel_event: Optional[asyncio.Event],
    ) -> list[CombinedAnalysis]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        for address in chunk:
            queue.put_nowait(address)

        results: list[CombinedAnalysis] = []

        async def worker() -> None:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return
                try:
                    address = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                results.append(
                    await self.process_token(
                        address, filters, candidates.get(address), cancel_event
                    )
                )

        worker_count = min(self._config.max_concurrent, len(chunk))
        await asyncio.gather(*(worker() for _ in range(worker_count)))
        return results

    # =========================================================================
    # Introspection
    # =========================================================================

    def get_stats(self) -> PipelineStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = PipelineStats()
        self._processing_times.clear()

    def update_config(self, **changes: Any) -> PipelineConfig:
        """
        Apply configuration changes after re-validation.

        Raises:
            ConfigurationError: If the result is invalid
        """
        values = self._config.model_dump()
        unknown = set(changes) - set(values)
        if unknown:
            raise ConfigurationError(f"Unknown pipeline option(s): {sorted(unknown)}")
        values.update(changes)
        self._config = PipelineConfig.create(**values)
        if self._executor is not None:
            retry = self._executor.retry_config
            if retry.max_retries != self._config.retry_attempts:
                self._executor.set_retry_config(replace(retry, max_retries=self._config.retry_attempts))
        logger.info(f"Pipeline configuration updated: {changes}")
        return self._config
