from pathlib import Path

import pytest
from pydantic import ValidationError

from birrpay.config import Settings, get_settings, reset_settings


class TestSettings:
    """Test Settings class field defaults and computed properties."""

    def test_quota_defaults_match_free_tier(self):
        s = Settings(_env_file=None)
        assert s.quota_read_limit == 50_000
        assert s.quota_write_limit == 20_000
        assert s.quota_window_seconds == 86_400
        assert s.quota_conservative_pct == 70
        assert s.quota_emergency_pct == 90

    def test_rate_and_delete_defaults(self):
        s = Settings(_env_file=None)
        assert s.quota_delete_limit == 20_000
        assert s.quota_reads_per_second == 1_000
        assert s.quota_writes_per_second == 500
        assert s.quota_deletes_per_second == 500

    def test_batching_defaults(self):
        s = Settings(_env_file=None)
        assert s.batch_max_size == 500
        assert s.batch_flush_interval_seconds == 1.0
        assert s.shutdown_timeout_seconds == 10.0

    def test_cache_and_pool_defaults(self):
        s = Settings(_env_file=None)
        assert s.cache_max_size == 10_000
        assert s.cache_ttl_seconds == 300
        assert s.pool_size == 10

    def test_health_defaults(self):
        s = Settings(_env_file=None)
        assert s.health_check_interval_seconds == 30
        assert s.health_score_threshold == 60
        assert s.memory_limit_mb == 512

    def test_values_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BATCH_MAX_SIZE", "50")
        monkeypatch.setenv("QUOTA_READ_LIMIT", "1000")
        monkeypatch.setenv("CACHE_TTL_SECONDS", "12.5")
        s = Settings(_env_file=None)
        assert s.batch_max_size == 50
        assert s.quota_read_limit == 1000
        assert s.cache_ttl_seconds == 12.5

    def test_rejects_zero_batch_size(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, batch_max_size=0)

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, cache_ttl_seconds=0)

    def test_rejects_conservative_above_emergency(self):
        with pytest.raises(ValidationError, match="quota_conservative_pct"):
            Settings(_env_file=None, quota_conservative_pct=95, quota_emergency_pct=90)

    def test_default_data_dir(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("DATA_DIR", raising=False)
        s = Settings(_env_file=None)
        # Project-relative, not CWD-relative.
        expected = Path(__file__).resolve().parent.parent / "data"
        assert s.data_dir == expected

    def test_custom_data_dir(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATA_DIR", "/tmp/custom")
        s = Settings(_env_file=None)
        assert s.data_dir == Path("/tmp/custom")

    def test_custom_log_level(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        s = Settings(_env_file=None)
        assert s.log_level == "DEBUG"

    def test_db_path_computed(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATA_DIR", "/srv/data")
        s = Settings(_env_file=None)
        assert s.db_path == Path("/srv/data/birrpay.db")


class TestGetSettings:
    """Test the lazy singleton get_settings / reset_settings."""

    def test_get_settings_returns_settings(self):
        assert isinstance(get_settings(), Settings)

    def test_get_settings_is_singleton(self):
        assert get_settings() is get_settings()

    def test_reset_settings_clears_cache(self):
        s1 = get_settings()
        reset_settings()
        s2 = get_settings()
        assert s1 is not s2
