"""Configuration management using Pydantic Settings."""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase (PostgREST) Configuration
    supabase_url: str = "http://localhost:54321"
    supabase_anon_key: str = ""

    # Remote request behaviour
    request_timeout: float = 10.0
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0

    # Cache Configuration (durations in milliseconds, sizes in characters)
    cache_namespace: str = "imoto"
    cache_legacy_prefixes: List[str] = ["cached_"]
    cache_version: str = "1.0"
    cache_duration_ms: int = 5 * 60 * 1000
    background_refresh_threshold_ms: int = 2 * 60 * 1000
    max_cache_size: int = 5 * 1024 * 1024
    eviction_batch_size: int = 5

    # Durable store: sqlite file when set, in-process memory otherwise
    cache_db_path: str = ""
    store_capacity: int = 10 * 1024 * 1024

    # Server Configuration
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Global settings instance
settings = Settings()
