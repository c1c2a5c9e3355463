"""
Application settings loaded from environment variables.
Uses pydantic-settings for type-safe configuration.

Every field can be overridden with a BLOGCAST_-prefixed environment
variable or an entry in `.env`.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway settings with defaults for development."""

    model_config = SettingsConfigDict(
        env_prefix="BLOGCAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = True

    # Server
    host: str = "0.0.0.0"
    port: int = 8001
    # Comma-separated list of allowed origins (empty uses the localhost defaults)
    allowed_origins: str = ""

    # Persistence collaborator
    persistence_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "blogcast"
    redis_socket_timeout: float = 5.0

    # Idle reaper
    reaper_interval: float = 30.0  # Seconds between idle sweeps
    idle_timeout: float = 300.0  # Connection considered dead after this much silence

    # Typing indicators
    typing_auto_clear: float = 3.0  # Window a typing entry lives without a refresh
    typing_reap_timeout: float = 10.0  # Backstop applied by the idle reaper
    typing_sweep_interval: float = 1.0

    # Offline presence records older than this are evicted by the idle reaper
    presence_retention: float = 24 * 60 * 60

    # Transport
    ws_receive_timeout: float = 90.0
    ws_max_message_size: int = 64 * 1024  # 64 KB
    ws_message_rate_limit: int = 30  # Max messages per window per connection
    ws_message_rate_window: int = 1  # Window in seconds

    # Persistence circuit breaker
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 30.0

    # Presence reconciliation. When True an identity goes offline as soon as
    # any of its connections drops, even if other connections are still live.
    presence_offline_on_any_disconnect: bool = False

    def get_allowed_origins(self) -> list[str]:
        """Parse the comma-separated origin list."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    def validate_production(self) -> list[str]:
        """
        Validate settings that must be changed before running in production.
        Returns a list of validation errors. Empty list means all checks pass.
        """
        errors = []
        if self.environment == "production":
            if self.debug:
                errors.append("DEBUG must be False in production")
            if not self.get_allowed_origins():
                errors.append("ALLOWED_ORIGINS must be configured in production")
            if self.typing_reap_timeout < self.typing_auto_clear:
                errors.append("TYPING_REAP_TIMEOUT must not be shorter than TYPING_AUTO_CLEAR")
        return errors


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
