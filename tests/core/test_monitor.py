"""Tests for birrpay.core.monitor: scheduler isolation, scoring, recovery."""

import asyncio
import sys
from unittest.mock import MagicMock, patch

import pytest

from birrpay.core.batcher import WriteBatcher
from birrpay.core.cache import TTLCache
from birrpay.core.monitor import HealthMonitor, Scheduler, process_memory_mb
from birrpay.core.pool import ConnectionPool
from birrpay.core.quota import QuotaTracker
from birrpay.models.enums import HealthState
from tests.factories import RecordingStore


def make_monitor(memory_mb: float = 100.0, **overrides) -> HealthMonitor:
    quota = QuotaTracker(read_limit=100, write_limit=100)
    defaults = {
        "cache": TTLCache(max_size=10),
        "batcher": WriteBatcher(RecordingStore(), quota=quota, flush_interval=60),
        "pool": ConnectionPool(size=4),
        "quota": quota,
        "memory_limit_mb": 1000.0,
        "memory_reader": lambda: memory_mb,
    }
    defaults.update(overrides)
    return HealthMonitor(**defaults)


def degrade(monitor: HealthMonitor) -> None:
    """Push quota and pool to their limits."""
    monitor.quota.record_read(100)
    for _ in range(monitor.pool.size):
        monitor.pool.acquire()


class TestProcessMemory:
    def test_reports_positive_megabytes(self):
        assert process_memory_mb() > 0

    @pytest.mark.skipif(not sys.platform.startswith("linux"), reason="reads procfs")
    def test_drops_after_memory_is_freed(self):
        before = process_memory_mb()
        blob = b"\x01" * (200 * 1024 * 1024)
        during = process_memory_mb()
        del blob
        after = process_memory_mb()
        assert during - before > 150
        assert after < during - 150

    def test_falls_back_to_peak_rss_without_procfs(self, tmp_path):
        with patch("birrpay.core.monitor.STATM_PATH", tmp_path / "missing"):
            assert process_memory_mb() > 0


class TestScheduler:
    async def test_job_runs_repeatedly(self):
        scheduler = Scheduler()
        calls = []
        scheduler.register("tick", 0.01, lambda: calls.append(1))
        scheduler.start()
        await asyncio.sleep(0.06)
        await scheduler.stop()
        assert len(calls) >= 2

    async def test_failing_job_keeps_its_schedule(self):
        scheduler = Scheduler()
        job = scheduler.register("boom", 0.01, MagicMock(side_effect=RuntimeError("boom")))
        scheduler.start()
        await asyncio.sleep(0.06)
        await scheduler.stop()
        assert job.failures >= 2
        assert job.runs == job.failures

    async def test_async_job_is_awaited(self):
        scheduler = Scheduler()
        done = []

        async def job():
            await asyncio.sleep(0)
            done.append(True)

        scheduler.register("async", 60, job)
        assert await scheduler.run_once("async") is True
        assert done == [True]

    async def test_run_once_reports_failure(self):
        scheduler = Scheduler()
        scheduler.register("bad", 60, MagicMock(side_effect=ValueError("x")))
        assert await scheduler.run_once("bad") is False

    def test_duplicate_name_rejected(self):
        scheduler = Scheduler()
        scheduler.register("a", 1, lambda: None)
        with pytest.raises(ValueError, match="already registered"):
            scheduler.register("a", 1, lambda: None)

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            Scheduler().register("a", 0, lambda: None)

    async def test_register_while_running_starts_job(self):
        scheduler = Scheduler()
        scheduler.start()
        calls = []
        scheduler.register("late", 0.01, lambda: calls.append(1))
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert calls
        assert scheduler.running is False


class TestScoring:
    def test_idle_system_is_healthy(self):
        monitor = make_monitor(memory_mb=100)
        status = monitor.get_status()
        assert status.scores.cache == 100.0
        assert status.scores.memory == pytest.approx(90.0)
        assert status.scores.quota == 100.0
        assert status.scores.pool == 100.0
        assert status.state == HealthState.HEALTHY

    def test_composite_uses_weights(self):
        monitor = make_monitor(memory_mb=500)
        monitor.quota.record_read(50)
        monitor.pool.acquire()
        monitor.pool.acquire()
        # cache 100, memory 50, quota 50, pool 50
        expected = 100 * 0.25 + 50 * 0.25 + 50 * 0.30 + 50 * 0.20
        assert monitor.get_status().score == pytest.approx(expected)

    def test_hit_rate_counts_after_enough_samples(self):
        monitor = make_monitor(min_cache_samples=4)
        for _ in range(4):
            monitor.cache.get("missing")
        assert monitor.get_status().scores.cache == 0.0

    def test_states_follow_threshold(self):
        monitor = make_monitor(memory_mb=1000, threshold=60)
        degrade(monitor)
        status = monitor.get_status()
        # only the cache sub-score is left
        assert status.score == pytest.approx(25.0)
        assert status.state == HealthState.CRITICAL

    def test_memory_score_recovers_when_usage_falls(self):
        readings = iter([900.0, 100.0])
        monitor = make_monitor(memory_reader=lambda: next(readings))
        under_pressure = monitor.get_status().scores.memory
        relieved = monitor.get_status().scores.memory
        assert under_pressure == pytest.approx(10.0)
        assert relieved == pytest.approx(90.0)

    def test_get_status_has_no_side_effects(self):
        monitor = make_monitor()
        monitor.get_status()
        monitor.get_status()
        assert monitor.get_stats().checks_run == 0


class TestCheckAndRecovery:
    async def test_healthy_check_runs_no_recovery(self):
        monitor = make_monitor()
        action = MagicMock()
        monitor.register_recovery("sweep", action)
        snapshot = await monitor.check()
        assert snapshot.state == HealthState.HEALTHY
        action.assert_not_called()
        assert monitor.get_stats().checks_run == 1

    async def test_low_score_runs_actions_in_order(self):
        monitor = make_monitor(memory_mb=900)
        degrade(monitor)
        order = []
        monitor.register_recovery("first", lambda snap: order.append("first"))

        async def second(snap):
            order.append("second")

        monitor.register_recovery("second", second)
        await monitor.check()
        assert order == ["first", "second"]
        assert monitor.get_stats().recoveries_triggered == 1

    async def test_failing_action_does_not_stop_others(self):
        monitor = make_monitor(memory_mb=900)
        degrade(monitor)
        later = MagicMock()
        monitor.register_recovery("broken", MagicMock(side_effect=RuntimeError("x")))
        monitor.register_recovery("later", later)
        await monitor.check()
        later.assert_called_once()
        assert monitor.get_stats().recovery_failures == 1

    async def test_action_receives_snapshot(self):
        monitor = make_monitor(memory_mb=900)
        degrade(monitor)
        action = MagicMock()
        monitor.register_recovery("inspect", action)
        snapshot = await monitor.check()
        action.assert_called_once_with(snapshot)

    async def test_start_schedules_health_check(self):
        monitor = make_monitor(check_interval=0.01)
        monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()
        assert "health_check" in monitor.scheduler.jobs
        assert monitor.get_stats().checks_run >= 1

    async def test_schedule_registers_with_shared_scheduler(self):
        monitor = make_monitor()
        monitor.schedule("cache_sweep", 60, monitor.cache.sweep)
        assert "cache_sweep" in monitor.scheduler.jobs

    async def test_stats_track_last_check(self):
        monitor = make_monitor()
        snapshot = await monitor.check()
        stats = monitor.get_stats()
        assert stats.last_score == snapshot.score
        assert stats.last_state == HealthState.HEALTHY
        assert stats.last_check_at == snapshot.checked_at
