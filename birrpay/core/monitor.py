"""Health monitoring: one scheduler for periodic jobs, weighted health
scoring, and caller-registered recovery actions."""

import asyncio
import inspect
import logging
import os
import resource
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from birrpay.core.batcher import WriteBatcher
from birrpay.core.cache import TTLCache
from birrpay.core.pool import ConnectionPool
from birrpay.core.quota import QuotaTracker
from birrpay.models.enums import HealthState
from birrpay.models.status import HealthScores, HealthSnapshot, MonitorStats

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object] | object]
RecoveryAction = Callable[[HealthSnapshot], Awaitable[object] | object]

DEFAULT_WEIGHTS = {"cache": 0.25, "memory": 0.25, "quota": 0.30, "pool": 0.20}
STATM_PATH = Path("/proc/self/statm")


def process_memory_mb() -> float:
    """Current resident set size of this process in MB.

    Read from procfs where available. Elsewhere falls back to the peak RSS
    reported by getrusage, which never decreases.
    """
    try:
        fields = STATM_PATH.read_text().split()
    except OSError:
        rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # macOS reports bytes, other platforms kilobytes.
        if sys.platform == "darwin":
            return rss / (1024 * 1024)
        return rss / 1024
    return int(fields[1]) * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)


async def _call(fn: Callable[..., object], *args: object) -> object:
    result = fn(*args)
    if inspect.isawaitable(result):
        return await result
    return result


# ── Scheduler ────────────────────────────────────────────────────────────────


@dataclass
class ScheduledJob:
    name: str
    interval: float
    callback: Job
    runs: int = 0
    failures: int = 0
    task: asyncio.Task | None = None


class Scheduler:
    """Runs every periodic job of the process on its own interval.

    A job that raises is logged and counted; its schedule carries on.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    def register(self, name: str, interval: float, callback: Job) -> ScheduledJob:
        if interval <= 0:
            raise ValueError("Job interval must be positive")
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already registered")
        job = ScheduledJob(name=name, interval=interval, callback=callback)
        self._jobs[name] = job
        if self._running:
            self._start_job(job)
        return job

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for job in self._jobs.values():
            self._start_job(job)

    def _start_job(self, job: ScheduledJob) -> None:
        job.task = asyncio.create_task(self._loop(job), name=f"job:{job.name}")

    async def _loop(self, job: ScheduledJob) -> None:
        while True:
            await asyncio.sleep(job.interval)
            await self.run_once(job.name)

    async def run_once(self, name: str) -> bool:
        """Run a job immediately. Returns False if it raised."""
        job = self._jobs[name]
        job.runs += 1
        try:
            await _call(job.callback)
        except Exception:
            job.failures += 1
            logger.exception("Scheduled job '%s' failed", name)
            return False
        return True

    async def stop(self) -> None:
        self._running = False
        tasks = [job.task for job in self._jobs.values() if job.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        return dict(self._jobs)


# ── Health Monitor ───────────────────────────────────────────────────────────


class HealthMonitor:
    """Samples every component, scores overall health, and self-heals.

    Recovery actions are registered by the owner and run, in registration
    order, whenever a check scores below ``threshold``.

    Args:
        cache, batcher, pool, quota: Components to sample.
        threshold: Score (0-100) below which recovery runs.
        memory_limit_mb: Memory budget used for the memory sub-score.
        min_cache_samples: Lookups needed before hit rate affects the score.
        check_interval: Seconds between scheduled checks.
        memory_reader: Returns current process memory in MB.
    """

    def __init__(
        self,
        cache: TTLCache,
        batcher: WriteBatcher,
        pool: ConnectionPool,
        quota: QuotaTracker,
        threshold: float = 60.0,
        memory_limit_mb: float = 512.0,
        min_cache_samples: int = 20,
        check_interval: float = 30.0,
        weights: dict[str, float] | None = None,
        memory_reader: Callable[[], float] = process_memory_mb,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.batcher = batcher
        self.pool = pool
        self.quota = quota
        self.threshold = threshold
        self.memory_limit_mb = memory_limit_mb
        self.min_cache_samples = min_cache_samples
        self.check_interval = check_interval
        self.weights = weights or dict(DEFAULT_WEIGHTS)
        self.memory_reader = memory_reader
        self.scheduler = scheduler or Scheduler()
        self._clock = clock
        self._started_at = clock()

        self._recovery: dict[str, RecoveryAction] = {}
        self._stats = MonitorStats()
        self._check_lock = asyncio.Lock()

    # ── Registration ──────────────────────────────────────────────────────

    def register_recovery(self, name: str, action: RecoveryAction) -> None:
        self._recovery[name] = action

    def schedule(self, name: str, interval: float, callback: Job) -> None:
        self.scheduler.register(name, interval, callback)

    @property
    def recovery_actions(self) -> list[str]:
        return list(self._recovery)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> None:
        if "health_check" not in self.scheduler.jobs:
            self.scheduler.register("health_check", self.check_interval, self.check)
        self.scheduler.start()
        logger.info("Health monitor started (interval=%.0fs)", self.check_interval)

    async def stop(self) -> None:
        await self.scheduler.stop()
        logger.info("Health monitor stopped")

    # ── Scoring ───────────────────────────────────────────────────────────

    def _scores(self, memory_mb: float) -> HealthScores:
        metrics = self.cache.metrics
        if metrics.lookups < self.min_cache_samples:
            cache_score = 100.0
        else:
            cache_score = metrics.hit_rate * 100

        if self.memory_limit_mb > 0:
            memory_score = max(0.0, 1 - memory_mb / self.memory_limit_mb) * 100
        else:
            memory_score = 100.0

        quota = self.quota.status()
        quota_score = 100 - max(quota.reads.pct, quota.writes.pct, quota.deletes.pct)

        pool_score = (1 - self.pool.stats().utilization) * 100
        return HealthScores(
            cache=cache_score, memory=memory_score, quota=quota_score, pool=pool_score
        )

    def _composite(self, scores: HealthScores) -> float:
        total_weight = sum(self.weights.values()) or 1.0
        weighted = sum(getattr(scores, name) * w for name, w in self.weights.items())
        return round(weighted / total_weight, 2)

    def _state_for(self, score: float) -> HealthState:
        if score >= self.threshold:
            return HealthState.HEALTHY
        if score >= self.threshold / 2:
            return HealthState.DEGRADED
        return HealthState.CRITICAL

    def get_status(self) -> HealthSnapshot:
        """Point-in-time snapshot across all components. No side effects."""
        memory_mb = self.memory_reader()
        scores = self._scores(memory_mb)
        score = self._composite(scores)
        return HealthSnapshot(
            state=self._state_for(score),
            score=score,
            scores=scores,
            memory_mb=round(memory_mb, 2),
            uptime_seconds=self._clock() - self._started_at,
            cache=self.cache.stats(),
            batcher=self.batcher.stats(),
            pool=self.pool.stats(),
            quota=self.quota.status(),
            checked_at=datetime.now(UTC),
        )

    def get_stats(self) -> MonitorStats:
        """Cumulative monitor counters since construction."""
        stats = self._stats.model_copy()
        stats.uptime_seconds = self._clock() - self._started_at
        stats.job_failures = sum(job.failures for job in self.scheduler.jobs.values())
        return stats

    # ── Check & recovery ──────────────────────────────────────────────────

    async def check(self) -> HealthSnapshot:
        """Take a snapshot and run recovery actions if the score is low."""
        async with self._check_lock:
            try:
                snapshot = self.get_status()
            except Exception:
                self._stats.check_failures += 1
                raise
            self._stats.checks_run += 1
            self._stats.last_score = snapshot.score
            self._stats.last_state = snapshot.state
            self._stats.last_check_at = snapshot.checked_at

            if snapshot.score < self.threshold:
                logger.warning(
                    "Health score %.1f below %.1f (%s); running %d recovery actions",
                    snapshot.score,
                    self.threshold,
                    snapshot.state,
                    len(self._recovery),
                )
                await self._recover(snapshot)
            return snapshot

    async def _recover(self, snapshot: HealthSnapshot) -> None:
        self._stats.recoveries_triggered += 1
        for name, action in list(self._recovery.items()):
            try:
                await _call(action, snapshot)
            except Exception:
                self._stats.recovery_failures += 1
                logger.exception("Recovery action '%s' failed", name)
            else:
                logger.info("Recovery action '%s' completed", name)
