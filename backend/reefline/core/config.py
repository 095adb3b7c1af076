"""
Reefline - Configuration
========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Reefline"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./reefline.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Authentication
    # ==========================================================================
    SECRET_KEY: str = "CHANGE-ME-IN-PRODUCTION-USE-LONG-RANDOM-STRING"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # ==========================================================================
    # GitLab (CI + source control provider)
    # ==========================================================================
    GITLAB_API_URL: str = "http://localhost:10080/api/v4"
    GITLAB_SERVICE_TOKEN: str | None = None  # Used when no user token is at hand (cancel)
    GITLAB_TIMEOUT_SECONDS: float = 15.0
    GITLAB_MAX_RETRIES: int = 2

    # ==========================================================================
    # Pipeline Instances
    # ==========================================================================
    PIPELINE_FILE_NAME: str = ".reefline.yml"
    PIPELINE_IMAGE: str = "registry.gitlab.com/reefline/epf:latest"
    PIPELINE_RUNNER_TAGS: list[str] = ["docker"]
    PIPELINE_CALLBACK_URL: str = "http://localhost:8000/api/v1/pipelines"
    PIPELINE_DEFAULT_BRANCH_PATTERN: str = "data-pipeline/$SLUG-$NUMBER"
    PIPELINE_SECRET_BYTES: int = 32
    PIPELINE_REDACTED_SECRET: str = "***censored***"
    PIPELINE_NUMBERING_MAX_RETRIES: int = 5

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
