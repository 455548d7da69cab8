"""
Tests for the scheduler / aggregator.

These tests verify:
- At most one run is active; overlapping triggers are skipped and counted
- The health gate aborts a run before discovery
- Passed analyses are emitted and stored; store failures stay inside the run
- Processed and blacklisted tokens are never rediscovered
- stop() gives the active run a grace period, then cancels it
"""

import asyncio

import pytest

from token_screener.config import ConfigurationError
from token_screener.core import EventType, RunPhase
from token_screener.models import Candidate, RunStatus

TOKEN_A = "TokenAaaa1111111111111111111111111111111111"
TOKEN_B = "TokenBbbb2222222222222222222222222222222222"
TOKEN_C = "TokenCccc3333333333333333333333333333333333"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def gated_discovery(discovery, gate: asyncio.Event):
    """Make discover() block until `gate` is set."""
    candidates = [Candidate(address=a) for a in (TOKEN_A, TOKEN_B, TOKEN_C)]

    async def discover(filters=None, chain="solana"):
        await gate.wait()
        return candidates

    discovery.discover.side_effect = discover


def types_of(events):
    return [e.type for e in events]


class TestSingleRun:
    """Tests for mutual exclusion of runs."""

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_skipped(self, aggregator, discovery):
        gate = asyncio.Event()
        gated_discovery(discovery, gate)

        first = asyncio.create_task(aggregator.run_aggregation())
        await wait_until(lambda: aggregator.is_running)

        assert await aggregator.run_aggregation() is None
        assert await aggregator.run_manual_aggregation() is None
        aggregator._fire_tick()
        assert aggregator.get_stats().skipped_ticks == 3

        gate.set()
        run = await first

        assert run.status == RunStatus.COMPLETED
        assert not aggregator.is_running
        assert discovery.discover.await_count == 1
        assert aggregator.get_stats().total_runs == 1

    @pytest.mark.asyncio
    async def test_phase_returns_to_idle(self, aggregator):
        await aggregator.run_aggregation()

        assert aggregator.phase == RunPhase.IDLE

    @pytest.mark.asyncio
    async def test_manual_run_returns_record(self, aggregator):
        run = await aggregator.run_manual_aggregation()

        assert run.status == RunStatus.COMPLETED
        assert run.id.startswith("run-")
        assert run.end_time is not None


class TestHealthGate:
    """Tests for the pre-discovery health check."""

    @pytest.mark.asyncio
    async def test_unhealthy_aborts_before_discovery(self, aggregator, health, discovery, report_factory):
        health.check_all.return_value = report_factory(healthy=1, total=4)

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.FAILED
        assert run.errors == [
            "Upstream providers unhealthy (1/4 healthy, required degraded); "
            "unhealthy: dexscreener, jupiter, solscan"
        ]
        discovery.discover.assert_not_awaited()
        assert aggregator.phase == RunPhase.FAILED
        assert aggregator.get_stats().error_count == 1

    @pytest.mark.asyncio
    async def test_degraded_passes_default_gate(self, aggregator, health, report_factory):
        health.check_all.return_value = report_factory(healthy=2, total=4)

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_strict_gate_rejects_degraded(self, aggregator, health, discovery, report_factory):
        await aggregator.update_config(health_gate="healthy")
        health.check_all.return_value = report_factory(healthy=2, total=4)

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.FAILED
        assert "required healthy" in run.errors[0]
        discovery.discover.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_next_run_proceeds_after_recovery(self, aggregator, health, report_factory):
        health.check_all.return_value = report_factory(healthy=0, total=4)
        await aggregator.run_aggregation()

        health.check_all.return_value = report_factory(healthy=4, total=4)
        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.COMPLETED
        assert aggregator.get_stats().success_rate == 50.0


class TestRunFlow:
    """Tests for discover -> process -> persist."""

    @pytest.mark.asyncio
    async def test_mixed_results(self, aggregator, stages, store, recorded_events):
        stages["security"].reject(TOKEN_B, "Honeypot risk detected")

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.COMPLETED
        assert run.tokens_discovered == 3
        assert run.tokens_processed == 3
        assert run.tokens_passed == 2
        assert run.tokens_stored == 2
        assert run.errors == []

        stored = sorted(call.args[0].address for call in store.store.await_args_list)
        assert stored == [TOKEN_A, TOKEN_C]

        types = types_of(recorded_events)
        assert types[0] == EventType.RUN_START
        assert types[1] == EventType.TOKEN_DISCOVERED
        assert types[-1] == EventType.RUN_COMPLETE
        assert types.count(EventType.TOKEN_PASSED) == 2
        assert types.count(EventType.TOKEN_STORED) == 2
        assert recorded_events[-1].payload is run

    @pytest.mark.asyncio
    async def test_store_failure_is_recorded(self, aggregator, store):
        async def flaky_store(analysis):
            if analysis.address == TOKEN_A:
                raise RuntimeError("db down")

        store.store.side_effect = flaky_store

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.COMPLETED
        assert run.tokens_passed == 3
        assert run.tokens_stored == 2
        assert run.errors == [f"Failed to store {TOKEN_A}: db down"]
        assert aggregator.get_stats().error_count == 1

    @pytest.mark.asyncio
    async def test_storage_disabled(self, aggregator, store, recorded_events):
        await aggregator.update_config(enable_database_storage=False)

        run = await aggregator.run_aggregation()

        store.store.assert_not_awaited()
        assert run.tokens_stored == 0
        assert EventType.TOKEN_PASSED in types_of(recorded_events)

    @pytest.mark.asyncio
    async def test_events_disabled(self, aggregator, store, recorded_events):
        await aggregator.update_config(enable_real_time_events=False)

        await aggregator.run_aggregation()

        assert EventType.TOKEN_PASSED not in types_of(recorded_events)
        assert store.store.await_count == 3

    @pytest.mark.asyncio
    async def test_pipeline_timeouts_become_run_errors(self, aggregator, stages):
        stages["routing"].delay = 1.0
        await aggregator.update_config(pipeline={"timeout_ms": 30})

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.COMPLETED
        assert run.tokens_passed == 0
        assert len(run.errors) == 3
        assert all("timed out" in e for e in run.errors)

    @pytest.mark.asyncio
    async def test_discovery_failure_fails_run(self, aggregator, discovery):
        discovery.discover.side_effect = RuntimeError("DexScreener down")

        run = await aggregator.run_aggregation()

        assert run.status == RunStatus.FAILED
        assert run.errors == ["Aggregation failed during discover: DexScreener down"]
        assert not aggregator.is_running


class TestRegistry:
    """Tests for processed and blacklisted bookkeeping across runs."""

    @pytest.mark.asyncio
    async def test_processed_tokens_not_rediscovered(self, aggregator, stages, registry):
        stages["security"].reject(TOKEN_B, "Honeypot risk detected")

        await aggregator.run_aggregation()
        second = await aggregator.run_aggregation()

        assert all(registry.is_processed(a) for a in (TOKEN_A, TOKEN_B, TOKEN_C))
        assert second.tokens_discovered == 0
        assert len(stages["security"].calls) == 3

    @pytest.mark.asyncio
    async def test_cap_leaves_rest_for_next_run(self, aggregator, stages):
        await aggregator.update_config(max_tokens_per_run=2)

        first = await aggregator.run_aggregation()
        second = await aggregator.run_aggregation()

        assert first.tokens_discovered == 2
        assert second.tokens_discovered == 1
        assert sorted(stages["security"].calls) == [TOKEN_A, TOKEN_B, TOKEN_C]

    @pytest.mark.asyncio
    async def test_blacklisted_token_skipped(self, aggregator, stages, recorded_events):
        address = await aggregator.add_to_blacklist(f" {TOKEN_A} ", reason="scam")

        run = await aggregator.run_aggregation()

        assert address == TOKEN_A
        assert run.tokens_discovered == 2
        assert TOKEN_A not in stages["security"].calls
        blacklisted = [e for e in recorded_events if e.type == EventType.TOKEN_BLACKLISTED]
        assert blacklisted[0].payload == {"address": TOKEN_A, "reason": "scam"}

    @pytest.mark.asyncio
    async def test_blacklisting_removes_from_processed(self, aggregator, registry):
        await aggregator.run_aggregation()

        await aggregator.add_to_blacklist(TOKEN_A)

        assert registry.is_blacklisted(TOKEN_A)
        assert not registry.is_processed(TOKEN_A)

    @pytest.mark.asyncio
    async def test_remove_from_blacklist(self, aggregator, recorded_events):
        await aggregator.add_to_blacklist(TOKEN_A)

        assert await aggregator.remove_from_blacklist(TOKEN_A) is True
        assert await aggregator.remove_from_blacklist(TOKEN_A) is False

        unblacklisted = [e for e in recorded_events if e.type == EventType.TOKEN_UNBLACKLISTED]
        assert len(unblacklisted) == 1

        run = await aggregator.run_aggregation()
        assert run.tokens_discovered == 3


class TestHistoryAndStats:
    """Tests for run history and counters."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, aggregator):
        runs = [await aggregator.run_aggregation() for _ in range(3)]

        history = aggregator.get_run_history(2)

        assert [r.id for r in history] == [runs[2].id, runs[1].id]
        assert aggregator.get_run_history(0) == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, aggregator):
        await aggregator.update_config(run_history_size=2)

        for _ in range(3):
            await aggregator.run_aggregation()

        assert len(aggregator.get_run_history(10)) == 2
        assert aggregator.get_stats().total_runs == 3

    @pytest.mark.asyncio
    async def test_stats_accumulate(self, aggregator):
        await aggregator.run_aggregation()

        stats = aggregator.get_stats()
        assert stats.total_runs == 1
        assert stats.tokens_discovered == 3
        assert stats.tokens_passed == 3
        assert stats.tokens_stored == 3
        assert stats.success_rate == 100.0
        assert stats.last_run_at is not None
        assert stats.average_run_time_ms >= 0

    @pytest.mark.asyncio
    async def test_reset_keeps_history(self, aggregator, recorded_events):
        await aggregator.run_aggregation()

        await aggregator.reset_stats()

        assert aggregator.get_stats().total_runs == 0
        assert len(aggregator.get_run_history()) == 1
        assert recorded_events[-1].type == EventType.STATS_RESET

    @pytest.mark.asyncio
    async def test_system_status(self, aggregator, registry):
        await aggregator.add_to_blacklist(TOKEN_A)
        await aggregator.run_aggregation()

        status = await aggregator.get_system_status()

        assert status["started"] is False
        assert status["phase"] == "idle"
        assert status["current_run"] is None
        assert status["stats"]["total_runs"] == 1
        assert status["registry"] == {"processed": 2, "blacklisted": 1}
        assert status["health"]["overall"] == "healthy"
        assert status["config"]["chain"] == "solana"


class TestUpdateConfig:
    """Tests for update_config()."""

    @pytest.mark.asyncio
    async def test_pipeline_changes_are_pushed(self, aggregator, pipeline):
        config = await aggregator.update_config(pipeline={"max_concurrent": 2})

        assert config.pipeline.max_concurrent == 2
        assert pipeline.config.max_concurrent == 2

    @pytest.mark.asyncio
    async def test_retry_attempts_reach_the_executor(self, aggregator, executor, recorded_events):
        await aggregator.update_config(pipeline={"retry_attempts": 0})

        assert executor.retry_config.max_retries == 0
        # Backoff timings are untouched
        assert executor.retry_config.base_delay == 0.0
        assert recorded_events[-1].type == EventType.CONFIG_UPDATED

    @pytest.mark.asyncio
    async def test_unrelated_pipeline_change_keeps_retry_policy(self, aggregator, executor):
        before = executor.retry_config

        await aggregator.update_config(pipeline={"batch_size": 5})

        assert executor.retry_config is before

    @pytest.mark.asyncio
    async def test_invalid_change_keeps_old_config(self, aggregator):
        old = aggregator.get_config()

        with pytest.raises(ConfigurationError):
            await aggregator.update_config(schedule="every five minutes")

        assert aggregator.get_config() is old

    @pytest.mark.asyncio
    async def test_unknown_key_rejected(self, aggregator):
        with pytest.raises(ConfigurationError):
            await aggregator.update_config(interval=300)

    @pytest.mark.asyncio
    async def test_schedule_change_restarts_timer(self, aggregator, recorded_events):
        await aggregator.start()
        old_task = aggregator._schedule_task
        try:
            await aggregator.update_config(schedule="*/10 * * * *")

            assert aggregator._schedule_task is not old_task
            assert old_task.cancelled() or old_task.done()
            assert recorded_events[-1].type == EventType.CONFIG_UPDATED
        finally:
            await aggregator.stop()


class TestLifecycle:
    """Tests for start() and stop()."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, aggregator, recorded_events):
        await aggregator.start()
        await wait_until(lambda: aggregator.get_stats().next_run_at is not None)

        assert aggregator.is_started
        await aggregator.start()

        await aggregator.stop()

        assert not aggregator.is_started
        assert types_of(recorded_events) == [EventType.SERVICE_STARTED, EventType.SERVICE_STOPPED]

    @pytest.mark.asyncio
    async def test_stop_when_not_started_is_noop(self, aggregator, recorded_events):
        await aggregator.stop()

        assert recorded_events == []

    @pytest.mark.asyncio
    async def test_run_immediately(self, aggregator):
        await aggregator.start(run_immediately=True)
        try:
            await wait_until(lambda: len(aggregator.get_run_history()) == 1)
        finally:
            await aggregator.stop()

        assert aggregator.get_run_history()[0].status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_waits_for_short_run(self, aggregator, stages):
        stages["security"].delay = 0.02
        await aggregator.start()
        run_task = asyncio.create_task(aggregator.run_manual_aggregation())
        await wait_until(lambda: aggregator.is_running)

        await aggregator.stop(grace_seconds=1.0)
        run = await run_task

        assert run.status == RunStatus.COMPLETED
        assert run.tokens_processed == 3

    @pytest.mark.asyncio
    async def test_stop_cancels_run_at_stage_boundary(self, aggregator, stages, registry):
        stages["security"].delay = 0.1
        await aggregator.start()
        run_task = asyncio.create_task(aggregator.run_manual_aggregation())
        await wait_until(lambda: len(stages["security"].calls) == 3)

        await aggregator.stop(grace_seconds=0.02)
        run = await run_task

        assert run.status == RunStatus.FAILED
        assert run.errors == ["Run cancelled during shutdown after 0/3 tokens"]
        assert stages["market"].calls == []
        # Cancelled tokens are picked up again after a restart
        assert registry.processed_count == 0

    @pytest.mark.asyncio
    async def test_stop_abandons_hung_run(self, aggregator, discovery, recorded_events):
        gated_discovery(discovery, asyncio.Event())
        await aggregator.start()
        run_task = asyncio.create_task(aggregator.run_manual_aggregation())
        await wait_until(lambda: aggregator.is_running)

        await aggregator.stop(grace_seconds=0.02)
        results = await asyncio.gather(run_task, return_exceptions=True)

        assert isinstance(results[0], asyncio.CancelledError)
        last = aggregator.get_run_history(1)[0]
        assert last.status == RunStatus.FAILED
        assert last.errors == ["Run abandoned during shutdown"]
        assert not aggregator.is_running

        completes = [e for e in recorded_events if e.type == EventType.RUN_COMPLETE]
        assert completes[-1].payload is last
        assert recorded_events[-1].type == EventType.SERVICE_STOPPED

    @pytest.mark.asyncio
    async def test_no_runs_while_stopping(self, aggregator, discovery):
        gated_discovery(discovery, asyncio.Event())
        await aggregator.start()
        run_task = asyncio.create_task(aggregator.run_manual_aggregation())
        await wait_until(lambda: aggregator.is_running)

        stopping = asyncio.create_task(aggregator.stop(grace_seconds=0.05))
        await asyncio.sleep(0.01)

        assert await aggregator.run_aggregation() is None
        await stopping
        await asyncio.gather(run_task, return_exceptions=True)
