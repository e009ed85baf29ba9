"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="mediasync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8090, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./mediasync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    scheduler_enabled: bool = Field(default=True, alias="SCHEDULER_ENABLED")
    schedule_poll_seconds: int = Field(
        default=3_600, alias="SCHEDULE_POLL_SECONDS", ge=60
    )

    source_request_timeout: float = Field(
        default=30.0, alias="SOURCE_REQUEST_TIMEOUT", gt=0
    )
    source_page_size: int = Field(
        default=200, alias="SOURCE_PAGE_SIZE", ge=1, le=1_000
    )
    source_max_retries: int = Field(
        default=3, alias="SOURCE_MAX_RETRIES", ge=0, le=10
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        """Accept log levels in any case."""

        if value is None or value == "":
            return "INFO"
        level = str(value).strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("Unknown log level configured")
        return level

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
