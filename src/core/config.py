"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, PostgresDsn, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: PostgresDsn = Field(
        default=...,
        description="PostgreSQL connection URL with asyncpg driver",
    )

    # Redis (optional, enables cross-instance cache invalidation)
    redis_url: RedisDsn | None = Field(
        default=None,
        description="Redis connection URL for cache invalidation pub/sub",
    )
    cache_invalidation_channel: str = Field(
        default="experimentation:invalidate",
        description="Redis pub/sub channel carrying registry invalidations",
    )

    # Application
    app_env: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Application environment",
    )
    app_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    app_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # CORS
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins",
    )

    # Registry caches
    experiment_cache_ttl_seconds: int = Field(
        default=300,
        ge=0,
        description="TTL for cached experiment definitions",
    )
    flag_cache_ttl_seconds: int = Field(
        default=180,
        ge=0,
        description="TTL for cached feature flag definitions",
    )
    user_flag_cache_max_sessions: int = Field(
        default=1000,
        ge=1,
        description="Maximum number of user sessions held in the flag evaluation cache",
    )

    # Assignment
    assignment_max_retries: int = Field(
        default=3,
        ge=1,
        description="Insert-or-read-back attempts before an assignment is abandoned",
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance (singleton pattern)."""
    return Settings()
