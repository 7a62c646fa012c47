"""
Configuration Management

Centralized configuration using Pydantic Settings.

Every value can be overridden from the environment (or a .env file) using the
upper-cased field name, e.g. CACHE_TTL_SECONDS=120 or REDIS_URL=redis://cache:6379/1.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "QueryGate"
    app_version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    # Query cache
    cache_enabled: bool = True
    cache_backend: Literal["redis", "memory", "none"] = "redis"
    redis_url: Optional[str] = "redis://localhost:6379/0"
    cache_ttl_seconds: int = 300
    cache_max_rows: int = 10000

    # Query execution
    query_timeout_seconds: int = 30
    query_max_rows: int = 10000
    read_only_sessions: bool = True

    # Connection pools (sized for interactive use, not batch throughput)
    pool_size: int = 10
    pool_acquire_timeout_seconds: float = 10.0
    connect_timeout_seconds: int = 5
    idle_timeout_seconds: int = 30

    # Document store schema inference
    mongo_sample_size: int = 100

    # Data source registry (credentials are encrypted at rest)
    source_store: Literal["sqlite", "memory"] = "sqlite"
    sources_db_path: str = "data/sources.db"
    secret_key: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings()
