from datetime import datetime

from pydantic import BaseModel, ConfigDict

from birrpay.models.enums import HealthState, QuotaMode


class QuotaUsage(BaseModel):
    used: int
    limit: int
    remaining: int
    pct: float


class QuotaStatus(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reads: QuotaUsage
    writes: QuotaUsage
    deletes: QuotaUsage
    reads_per_second: int = 0
    writes_per_second: int = 0
    deletes_per_second: int = 0
    mode: QuotaMode
    window_start: datetime
    window_resets_at: datetime


class CacheStats(BaseModel):
    size: int
    max_size: int
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    expirations: int = 0
    hit_rate: float = 0.0


class BatcherStats(BaseModel):
    pending_batches: int = 0
    queue_depth: int = 0
    in_flight: int = 0
    flushes: int = 0
    items_committed: int = 0
    items_failed: int = 0
    items_retried: int = 0
    items_abandoned: int = 0


class PoolStats(BaseModel):
    size: int
    active: int = 0
    available: int = 0
    acquisitions: int = 0
    fallbacks: int = 0
    reclaimed: int = 0

    @property
    def utilization(self) -> float:
        if self.size == 0:
            return 0.0
        return self.active / self.size


class HealthScores(BaseModel):
    cache: float
    memory: float
    quota: float
    pool: float


class HealthSnapshot(BaseModel):
    """Point-in-time view across every component. Derived, never stored."""

    state: HealthState
    score: float
    scores: HealthScores
    memory_mb: float
    uptime_seconds: float
    cache: CacheStats
    batcher: BatcherStats
    pool: PoolStats
    quota: QuotaStatus
    checked_at: datetime


class MonitorStats(BaseModel):
    checks_run: int = 0
    check_failures: int = 0
    recoveries_triggered: int = 0
    recovery_failures: int = 0
    job_failures: int = 0
    last_score: float | None = None
    last_state: HealthState | None = None
    last_check_at: datetime | None = None
    uptime_seconds: float = 0.0


class PerformanceStats(BaseModel):
    """Cumulative counters for the whole layer since start."""

    cached_reads: int = 0
    store_reads: int = 0
    read_errors: int = 0
    queued_writes: int = 0
    cache: CacheStats
    batcher: BatcherStats
    pool: PoolStats
    quota: QuotaStatus
    monitor: MonitorStats

    @property
    def read_savings(self) -> float:
        """Share of reads answered without touching the store."""
        total = self.cached_reads + self.store_reads
        if total == 0:
            return 0.0
        return self.cached_reads / total
