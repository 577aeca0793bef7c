from enum import StrEnum


class WriteType(StrEnum):
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


class QuotaMode(StrEnum):
    NORMAL = "normal"
    CONSERVATIVE = "conservative"
    EMERGENCY = "emergency"


class HealthState(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
