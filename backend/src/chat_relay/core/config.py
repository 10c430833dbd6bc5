"""Configuration management using Pydantic Settings"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CHAT_RELAY_",
        extra="ignore",
    )

    # Server
    cors_origins: list[str] = ["http://localhost:3000"]

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Upstream provider
    upstream_base_url: str = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    default_model_id: str = "deepseek/deepseek-r1-0528:free"
    default_system_prompt: str | None = None
    default_temperature: float = 0.7
    max_tokens: int = 4000
    http_referer: str = "https://github.com/chat-relay/chat-relay"
    app_title: str = "Chat Relay"
    request_timeout_s: float = 60.0
    connect_timeout_s: float = 30.0

    # Retry
    max_retries: int = 3
    retry_base_delay_ms: float = 1000
    retry_max_delay_ms: float = 30000
    retry_jitter: float = 0.3

    # Persistence
    database_path: Path = Path("data/chat_relay.db")
    placeholder_title: str = "New Conversation"
    title_generation_thresholds: list[int] = [1, 3, 5]
    storage_retry_attempts: int = 3

    # Client-side reconciliation
    reconciler_flush_interval_ms: int = 50

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> LogLevel:
        """Validate log level, fallback to INFO if invalid."""
        upper_v = v.upper()
        if upper_v not in VALID_LOG_LEVELS:
            return "INFO"
        return upper_v  # type: ignore[return-value]

    @field_validator("retry_jitter")
    @classmethod
    def validate_retry_jitter(cls, v: float) -> float:
        """Clamp jitter ratio into [0, 0.3]."""
        return min(max(v, 0.0), 0.3)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance. Use this for dependency injection."""
    return Settings()


# For backward compatibility and simple imports
settings = get_settings()
