"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Counter store
    store_backend: str = "memory"  # "memory" or "redis"
    store_timeout_seconds: float = 0.25  # Max time a check waits on the store

    # Redis
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "gatekeeper:"
    redis_socket_timeout: float = 1.0
    redis_max_connections: int = 20
    redis_reconnect_interval_seconds: float = 1.0  # Min gap between reconnect attempts

    # Compare-and-swap loop (networked store)
    cas_max_retries: int = 5
    cas_backoff_seconds: float = 0.002  # Multiplied by attempt number

    # In-memory store
    memory_shards: int = 64
    cleanup_interval_seconds: int = 60

    # Rules
    rules_path: str = "rules.json"

    # Logging
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience access
settings = get_settings()
