"""
Scheduler / aggregator - the top-level control loop.

Each cron tick runs:

    IDLE -> HEALTH_CHECK -> DISCOVER -> PROCESS -> PERSIST_AND_EMIT -> IDLE

and ends FAILED when any step raises. At most one run is active at a time;
a tick that fires during a run is skipped and counted, never queued.

The processed/blacklist registry and the cache are shared with the worker
pool during PROCESS, but they are only mutated in PERSIST_AND_EMIT, after
the batch has completed.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from croniter import croniter

from token_screener.config import AggregatorConfig, FilterCriteria
from token_screener.models import (
    AggregatorStats,
    Candidate,
    CombinedAnalysis,
    RunRecord,
    RunStatus,
    utc_now,
)
from token_screener.monitoring import HealthAggregator, HealthStatus, SystemHealthReport

from .events import EventDispatcher, EventType
from .pipeline import PipelineOrchestrator
from .registry import TokenRegistry

logger = logging.getLogger(__name__)

CANCELLED_FILTER = "Pipeline: cancelled"


class RunPhase(str, Enum):
    """Where the active run currently is."""

    IDLE = "idle"
    HEALTH_CHECK = "health_check"
    DISCOVER = "discover"
    PROCESS = "process"
    PERSIST_AND_EMIT = "persist_and_emit"
    FAILED = "failed"


class UpstreamUnhealthy(Exception):
    """Provider health is below the gate; the run is aborted before discovery."""

    def __init__(self, report: SystemHealthReport, required: HealthStatus):
        unhealthy = sorted(name for name, h in report.services.items() if not h.healthy)
        super().__init__(
            f"Upstream providers {report.overall.value} "
            f"({report.healthy_services}/{report.total_services} healthy, "
            f"required {required.value}); unhealthy: {', '.join(unhealthy) or 'none'}"
        )
        self.report = report
        self.required = required


class RunCancelled(Exception):
    """The run was cut short by stop()."""
    pass


class DiscoverySource(Protocol):
    async def discover(
        self, filters: Optional[FilterCriteria] = None, chain: str = "solana"
    ) -> list[Candidate]:
        ...


class AnalysisStore(Protocol):
    """Persistence collaborator. Raises on failure."""

    async def store(self, analysis: CombinedAnalysis) -> None:
        ...


class TokenAggregator:
    """
    Scheduled discover -> screen -> persist loop.

    Usage:
        aggregator = TokenAggregator(
            config=AggregatorConfig(),
            discovery=dexscreener,
            pipeline=pipeline,
            health=health_aggregator,
            registry=TokenRegistry(cache),
            store=repository,
        )
        aggregator.events.subscribe(on_passed, [EventType.TOKEN_PASSED])

        await aggregator.start()
        ...
        await aggregator.stop()
    """

    def __init__(
        self,
        config: AggregatorConfig,
        discovery: DiscoverySource,
        pipeline: PipelineOrchestrator,
        health: HealthAggregator,
        registry: TokenRegistry,
        store: Optional[AnalysisStore] = None,
        events: Optional[EventDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
        drain_seconds: float = 2.0,
    ) -> None:
        """
        Initialize the aggregator.

        Args:
            config: Validated aggregator configuration
            discovery: Source of new candidates
            pipeline: Orchestrator for the per-token stages
            health: Provider health aggregator used as the run gate
            registry: Processed/blacklist sets (loaded on start)
            store: Persistence collaborator for passed analyses
            events: Dispatcher for notifications (created if not provided)
            clock: Wall clock used for cron scheduling and run timestamps
            drain_seconds: Time given to a cancelled run to wind down before
                its task is cancelled outright
        """
        self._config = config
        self._discovery = discovery
        self._pipeline = pipeline
        self._health = health
        self._registry = registry
        self._store = store
        self._events = events or EventDispatcher()
        self._clock = clock
        self._drain_seconds = drain_seconds

        self._stats = AggregatorStats()
        self._history: deque[RunRecord] = deque(maxlen=config.run_history_size)
        self._run_times: deque[float] = deque(maxlen=config.run_time_window)
        self._completed_runs = 0

        self._is_running = False
        self._phase = RunPhase.IDLE
        self._current_run: Optional[RunRecord] = None
        self._cancel_event = asyncio.Event()

        self._started = False
        self._shutting_down = False
        self._stop_event = asyncio.Event()
        self._schedule_task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

    @property
    def events(self) -> EventDispatcher:
        return self._events

    @property
    def registry(self) -> TokenRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        """Whether an aggregation run is active."""
        return self._is_running

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def phase(self) -> RunPhase:
        return self._phase

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, run_immediately: bool = False) -> None:
        """Load the registry and start the cron timer."""
        if self._started:
            logger.warning("TokenAggregator already started")
            return

        self._registry.load()
        self._stop_event.clear()
        self._started = True
        self._schedule_task = asyncio.create_task(
            self._schedule_loop(), name="aggregator_schedule"
        )
        logger.info(f"Token aggregator started (schedule={self._config.schedule!r})")

        await self._events.emit(
            EventType.SERVICE_STARTED,
            {"schedule": self._config.schedule, "next_run_at": self._stats.next_run_at},
        )

        if run_immediately:
            self._fire_tick()

    async def stop(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop the timer and wind down any active run.

        The active run gets `grace_seconds` to finish. After that the cancel
        signal is raised so the worker pool stops at stage boundaries, and
        once `drain_seconds` pass the run task is cancelled and recorded as
        failed.
        """
        if not self._started:
            return

        grace = self._config.stop_grace_seconds if grace_seconds is None else grace_seconds
        logger.info("Stopping token aggregator...")
        self._started = False
        self._shutting_down = True
        self._stop_event.set()

        try:
            await self._cancel_schedule_task()

            run_task = self._run_task
            if run_task is not None and not run_task.done():
                done, _ = await asyncio.wait({run_task}, timeout=grace)
                if not done:
                    logger.warning(f"Active run exceeded {grace:g}s grace period, cancelling")
                    self._cancel_event.set()
                    done, _ = await asyncio.wait({run_task}, timeout=self._drain_seconds)
                if not done:
                    run_task.cancel()
                    await asyncio.gather(run_task, return_exceptions=True)
                    if self._history:
                        await self._events.emit(EventType.RUN_COMPLETE, self._history[-1])

            self._registry.save()
        finally:
            self._shutting_down = False

        await self._events.emit(EventType.SERVICE_STOPPED, {})
        logger.info("Token aggregator stopped")

    async def _cancel_schedule_task(self) -> None:
        task = self._schedule_task
        self._schedule_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _schedule_loop(self) -> None:
        """Fire a tick at every cron occurrence until stopped."""
        schedule = croniter(self._config.schedule, self._clock())
        while not self._stop_event.is_set():
            next_run = schedule.get_next(datetime)
            self._stats.next_run_at = next_run
            delay = max(0.0, (next_run - self._clock()).total_seconds())

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break  # Stop requested
            except asyncio.TimeoutError:
                pass

            self._fire_tick()

    def _fire_tick(self) -> None:
        if self._is_running:
            self._stats.skipped_ticks += 1
            logger.warning("Aggregation already running, skipping tick")
            return
        self._run_task = asyncio.create_task(self.run_aggregation(), name="aggregation_run")

    # =========================================================================
    # Runs
    # =========================================================================

    def _new_run_id(self) -> str:
        return f"run-{int(self._clock().timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"

    async def run_aggregation(self) -> Optional[RunRecord]:
        """
        Execute one run.

        Returns:
            The finished RunRecord, or None when skipped because another run
            is active or the aggregator is shutting down
        """
        # Check-and-set with no await in between
        if self._is_running or self._shutting_down:
            self._stats.skipped_ticks += 1
            logger.warning("Aggregation already running or stopping, skipping")
            return None
        self._is_running = True
        self._stats.is_running = True

        run = RunRecord(id=self._new_run_id(), start_time=self._clock())
        self._current_run = run
        self._cancel_event = asyncio.Event()
        started = time.monotonic()
        logger.info(f"Starting aggregation run {run.id}")

        try:
            await self._events.emit(EventType.RUN_START, {"run_id": run.id})
            await self._execute(run)
            run.status = RunStatus.COMPLETED
        except UpstreamUnhealthy as e:
            run.status = RunStatus.FAILED
            run.errors.append(str(e))
            self._phase = RunPhase.FAILED
            logger.warning(f"Run {run.id} aborted by health gate: {e}")
        except RunCancelled as e:
            run.status = RunStatus.FAILED
            run.errors.append(str(e))
            self._phase = RunPhase.FAILED
            logger.warning(f"Run {run.id} cancelled: {e}")
        except asyncio.CancelledError:
            run.status = RunStatus.FAILED
            run.errors.append("Run abandoned during shutdown")
            self._phase = RunPhase.FAILED
            raise
        except Exception as e:
            run.status = RunStatus.FAILED
            run.errors.append(f"Aggregation failed during {self._phase.value}: {e}")
            self._phase = RunPhase.FAILED
            logger.exception(f"Run {run.id} failed: {e}")
        finally:
            run.end_time = self._clock()
            self._finish_run(run, (time.monotonic() - started) * 1000)

        logger.info(
            f"Run {run.id} {run.status.value}: discovered={run.tokens_discovered} "
            f"processed={run.tokens_processed} passed={run.tokens_passed} "
            f"stored={run.tokens_stored} errors={len(run.errors)}"
        )
        await self._events.emit(EventType.RUN_COMPLETE, run)
        return run

    async def _execute(self, run: RunRecord) -> None:
        config = self._config
        filters = config.filters

        # HEALTH_CHECK
        self._phase = RunPhase.HEALTH_CHECK
        report = await self._health.check_all()
        required = HealthStatus(config.health_gate)
        if not report.overall.at_least(required):
            raise UpstreamUnhealthy(report, required)

        # DISCOVER
        self._phase = RunPhase.DISCOVER
        candidates = await self._discovery.discover(filters, config.chain)
        by_address = {c.address: c for c in candidates}
        fresh = self._registry.filter_new(c.address for c in candidates)
        fresh = fresh[:config.max_tokens_per_run]
        run.tokens_discovered = len(fresh)
        logger.info(
            f"Discovered {len(candidates)} candidates, {len(fresh)} new "
            f"(cap {config.max_tokens_per_run})"
        )
        if not fresh:
            self._phase = RunPhase.IDLE
            return
        await self._events.emit(EventType.TOKEN_DISCOVERED, list(fresh))

        # PROCESS
        self._phase = RunPhase.PROCESS
        analyses = await self._pipeline.process_batch(
            fresh, filters, candidates=by_address, cancel_event=self._cancel_event
        )
        run.tokens_processed = len(analyses)
        for analysis in analyses:
            for reason in analysis.failed_filters:
                if reason.startswith("Pipeline:") and reason != CANCELLED_FILTER:
                    run.errors.append(f"{analysis.address}: {reason}")

        # PERSIST_AND_EMIT
        self._phase = RunPhase.PERSIST_AND_EMIT
        passed = [a for a in analyses if a.passed]
        run.tokens_passed = len(passed)
        for analysis in passed:
            await self._persist_and_emit(run, analysis)

        evaluated = [a.address for a in analyses if CANCELLED_FILTER not in a.failed_filters]
        self._registry.mark_processed(evaluated)
        self._registry.save()
        self._phase = RunPhase.IDLE

        if self._cancel_event.is_set():
            raise RunCancelled(
                f"Run cancelled during shutdown after {len(evaluated)}/{len(fresh)} tokens"
            )

    async def _persist_and_emit(self, run: RunRecord, analysis: CombinedAnalysis) -> None:
        if self._config.enable_real_time_events:
            await self._events.emit(EventType.TOKEN_PASSED, analysis)

        if not self._config.enable_database_storage or self._store is None:
            return

        try:
            await self._store.store(analysis)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            run.errors.append(f"Failed to store {analysis.address}: {e}")
            self._stats.error_count += 1
            logger.error(f"Failed to store analysis for {analysis.address}: {e}")
            return

        run.tokens_stored += 1
        await self._events.emit(EventType.TOKEN_STORED, analysis)

    def _finish_run(self, run: RunRecord, elapsed_ms: float) -> None:
        """Fold a finished run into history and stats. Called exactly once per run."""
        stats = self._stats
        self._history.append(run)
        self._run_times.append(elapsed_ms)

        stats.total_runs += 1
        stats.tokens_discovered += run.tokens_discovered
        stats.tokens_processed += run.tokens_processed
        stats.tokens_passed += run.tokens_passed
        stats.tokens_stored += run.tokens_stored
        stats.last_run_at = run.start_time
        stats.average_run_time_ms = sum(self._run_times) / len(self._run_times)

        if run.status == RunStatus.COMPLETED:
            self._completed_runs += 1
        else:
            stats.error_count += 1
        stats.success_rate = self._completed_runs / stats.total_runs * 100

        self._current_run = None
        self._is_running = False
        stats.is_running = False
        if self._phase != RunPhase.FAILED:
            self._phase = RunPhase.IDLE

    async def run_manual_aggregation(self) -> Optional[RunRecord]:
        """Trigger a run outside the schedule. Returns None if one is active."""
        if self._is_running:
            self._stats.skipped_ticks += 1
            logger.warning("Manual aggregation requested while a run is active")
            return None
        logger.info("Manual aggregation triggered")
        self._run_task = asyncio.create_task(self.run_aggregation(), name="aggregation_manual")
        return await self._run_task

    # =========================================================================
    # Introspection and operator actions
    # =========================================================================

    def get_stats(self) -> AggregatorStats:
        self._stats.is_running = self._is_running
        return self._stats

    def get_run_history(self, limit: int = 10) -> list[RunRecord]:
        """Most recent runs, newest first."""
        if limit <= 0:
            return []
        return list(reversed(self._history))[:limit]

    async def get_health_status(self) -> SystemHealthReport:
        return await self._health.check_all()

    def get_config(self) -> AggregatorConfig:
        return self._config

    async def add_to_blacklist(self, address: str, reason: str = "") -> str:
        """Blacklist an address (removing it from the processed set)."""
        address = self._registry.blacklist(address, reason)
        self._registry.save()
        logger.info(f"Token blacklisted: {address} ({reason or 'no reason'})")
        await self._events.emit(EventType.TOKEN_BLACKLISTED, {"address": address, "reason": reason})
        return address

    async def remove_from_blacklist(self, address: str) -> bool:
        removed = self._registry.unblacklist(address)
        if removed:
            self._registry.save()
            logger.info(f"Token removed from blacklist: {address}")
            await self._events.emit(EventType.TOKEN_UNBLACKLISTED, {"address": address})
        return removed

    async def update_config(self, **changes: Any) -> AggregatorConfig:
        """
        Apply configuration changes after re-validation.

        A schedule change restarts the timer; pipeline changes are pushed to
        the orchestrator.

        Raises:
            ConfigurationError: If the resulting configuration is invalid
        """
        old = self._config
        new = old.with_changes(**changes)
        self._config = new

        if new.pipeline != old.pipeline:
            self._pipeline.update_config(**new.pipeline.model_dump())
        if new.run_history_size != old.run_history_size:
            self._history = deque(self._history, maxlen=new.run_history_size)
        if new.run_time_window != old.run_time_window:
            self._run_times = deque(self._run_times, maxlen=new.run_time_window)

        if new.schedule != old.schedule and self._started:
            await self._cancel_schedule_task()
            self._schedule_task = asyncio.create_task(
                self._schedule_loop(), name="aggregator_schedule"
            )
            logger.info(f"Schedule changed to {new.schedule!r}, timer restarted")

        await self._events.emit(EventType.CONFIG_UPDATED, new)
        return new

    async def reset_stats(self) -> None:
        """Zero the rolling counters. Run history is kept."""
        next_run_at = self._stats.next_run_at
        self._stats = AggregatorStats(next_run_at=next_run_at, is_running=self._is_running)
        self._run_times.clear()
        self._completed_runs = 0
        self._pipeline.reset_stats()
        logger.info("Aggregator statistics reset")
        await self._events.emit(EventType.STATS_RESET, {})

    async def get_system_status(self) -> dict[str, Any]:
        """Everything an operator dashboard needs in one call."""
        health = await self.get_health_status()
        current = self._current_run
        return {
            "started": self._started,
            "phase": self._phase.value,
            "current_run": current.to_dict() if current else None,
            "stats": self.get_stats().to_dict(),
            "pipeline": self._pipeline.get_stats().to_dict(),
            "health": health.to_dict(),
            "registry": {
                "processed": self._registry.processed_count,
                "blacklisted": self._registry.blacklisted_count,
            },
            "config": self._config.model_dump(),
        }
