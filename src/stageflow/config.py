"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class ExitCriteriaPolicy(str, Enum):
    """How a move out of a stage with unmet required fields is handled."""

    strict = "strict"  # block the move
    advisory = "advisory"  # allow the move, flag the movement


class DispatchBackend(str, Enum):
    memory = "memory"
    redis = "redis"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Automation engine
    CASCADE_LIMIT: int = 5
    EXIT_CRITERIA_POLICY: ExitCriteriaPolicy = ExitCriteriaPolicy.advisory
    SCHEDULER_POLL_SECONDS: int = 30

    # Analytics
    ANALYTICS_PERIOD_DAYS: int = 30
    ANALYTICS_CACHE_ENABLED: bool = False
    ANALYTICS_CACHE_TTL: int = 300  # 5 minutes
    VELOCITY_TREND_THRESHOLD: float = 0.10
    CONGESTION_THRESHOLD: int = 50

    # Redis (analytics cache + dispatch stream)
    REDIS_URL: str = "redis://localhost:6379/0"
    DISPATCH_BACKEND: DispatchBackend = DispatchBackend.memory

    # Monitoring
    SENTRY_DSN: str = ""


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
