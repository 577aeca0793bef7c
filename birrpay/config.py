from pathlib import Path

from pydantic import Field, computed_field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables and .env file.

    Defaults follow the document store's free-tier budget (50K reads and 20K
    writes a day) and a 512 MB container.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cache
    cache_max_size: int = Field(default=10_000, ge=1)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_sweep_interval_seconds: float = Field(default=60.0, gt=0)

    # Write batching
    batch_max_size: int = Field(default=500, ge=1)
    batch_flush_interval_seconds: float = Field(default=1.0, gt=0)
    batch_item_retry_attempts: int = Field(default=1, ge=1)
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0)

    # Connection pool
    pool_size: int = Field(default=10, ge=0)
    pool_stale_after_seconds: float = Field(default=60.0, gt=0)

    # Quota
    quota_read_limit: int = Field(default=50_000, ge=1)
    quota_write_limit: int = Field(default=20_000, ge=1)
    quota_delete_limit: int = Field(default=20_000, ge=1)
    quota_reads_per_second: int = Field(default=1_000, ge=1)
    quota_writes_per_second: int = Field(default=500, ge=1)
    quota_deletes_per_second: int = Field(default=500, ge=1)
    quota_window_seconds: float = Field(default=24 * 60 * 60, gt=0)
    quota_conservative_pct: float = Field(default=70.0, gt=0, le=100)
    quota_emergency_pct: float = Field(default=90.0, gt=0, le=100)
    quota_hysteresis_pct: float = Field(default=5.0, ge=0)
    conservative_ttl_multiplier: float = Field(default=2.0, ge=1)
    emergency_ttl_multiplier: float = Field(default=4.0, ge=1)

    # Health monitor
    health_check_interval_seconds: float = Field(default=30.0, gt=0)
    health_score_threshold: float = Field(default=60.0, ge=0, le=100)
    memory_limit_mb: float = Field(default=512.0, gt=0)

    # Ops server transport and bind address
    mcp_transport: str = "stdio"
    mcp_host: str = "0.0.0.0"
    mcp_port: int = 8000

    # Paths & logging. Default is <project_root>/data so it works
    # regardless of the process working directory.
    data_dir: Path = Path(__file__).resolve().parent.parent / "data"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_quota_thresholds(self) -> "Settings":
        if self.quota_conservative_pct > self.quota_emergency_pct:
            raise ValueError("quota_conservative_pct must not exceed quota_emergency_pct")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def db_path(self) -> Path:
        return self.data_dir / "birrpay.db"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the cached Settings singleton. Created on first call."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached settings. Used in tests."""
    global _settings  # noqa: PLW0603
    _settings = None
