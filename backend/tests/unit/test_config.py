"""Unit tests for application settings."""

from pathlib import Path

from chat_relay.core.config import Settings, get_settings


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self, monkeypatch):
        """Should provide working defaults."""
        monkeypatch.delenv("CHAT_RELAY_API_KEY", raising=False)
        settings = Settings(_env_file=None)
        assert settings.upstream_base_url == "https://openrouter.ai/api/v1"
        assert settings.default_model_id == "deepseek/deepseek-r1-0528:free"
        assert settings.max_retries == 3
        assert settings.retry_base_delay_ms == 1000
        assert settings.retry_max_delay_ms == 30000
        assert settings.title_generation_thresholds == [1, 3, 5]
        assert settings.database_path == Path("data/chat_relay.db")

    def test_env_prefix(self, monkeypatch):
        """Should read CHAT_RELAY_ variables."""
        monkeypatch.setenv("CHAT_RELAY_API_KEY", "sk-test")
        monkeypatch.setenv("CHAT_RELAY_MAX_RETRIES", "5")
        settings = Settings(_env_file=None)
        assert settings.api_key == "sk-test"
        assert settings.max_retries == 5

    def test_invalid_log_level_falls_back(self):
        """Should fall back to INFO for unknown log levels."""
        assert Settings(_env_file=None, log_level="verbose").log_level == "INFO"
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_jitter_clamped(self):
        """Should clamp jitter to [0, 0.3]."""
        assert Settings(_env_file=None, retry_jitter=0.9).retry_jitter == 0.3
        assert Settings(_env_file=None, retry_jitter=-1).retry_jitter == 0.0

    def test_get_settings_cached(self):
        """Should return the same instance."""
        assert get_settings() is get_settings()

    def test_no_server_binding_options(self):
        """Should leave host and port to the ASGI server."""
        assert "host" not in Settings.model_fields
        assert "port" not in Settings.model_fields
