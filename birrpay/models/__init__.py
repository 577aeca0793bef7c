from birrpay.models.enums import HealthState, QuotaMode, WriteType
from birrpay.models.status import (
    BatcherStats,
    CacheStats,
    HealthScores,
    HealthSnapshot,
    MonitorStats,
    PerformanceStats,
    PoolStats,
    QuotaStatus,
    QuotaUsage,
)
from birrpay.models.writes import FlushResult, PendingWrite, WriteOutcome

__all__ = [
    "BatcherStats",
    "CacheStats",
    "FlushResult",
    "HealthScores",
    "HealthSnapshot",
    "HealthState",
    "MonitorStats",
    "PendingWrite",
    "PerformanceStats",
    "PoolStats",
    "QuotaMode",
    "QuotaStatus",
    "QuotaUsage",
    "WriteOutcome",
    "WriteType",
]
