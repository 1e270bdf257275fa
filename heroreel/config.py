"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="HeroReel", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_token: str | None = Field(default=None, alias="TMDB_TOKEN")
    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_config_url: str | None = Field(default=None, alias="TMDB_CONFIG_URL")
    tmdb_fallback_credential: str | None = Field(
        default=None, alias="TMDB_FALLBACK_CREDENTIAL"
    )

    tmdb_min_request_interval_ms: int = Field(
        default=400, alias="TMDB_MIN_REQUEST_INTERVAL_MS", ge=0, le=10_000
    )
    tmdb_max_retries: int = Field(default=3, alias="TMDB_MAX_RETRIES", ge=0, le=10)
    tmdb_max_rate_limit_wait_ms: int = Field(
        default=15_000, alias="TMDB_MAX_RATE_LIMIT_WAIT_MS", ge=0
    )
    tmdb_cache_ttl_seconds: int = Field(
        default=86_400, alias="TMDB_CACHE_TTL_SECONDS", ge=60
    )
    tmdb_cache_max_entries: int = Field(
        default=60, alias="TMDB_CACHE_MAX_ENTRIES", ge=1, le=1_000
    )

    hero_policy_path: Path | None = Field(default=None, alias="HERO_POLICY_PATH")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./heroreel.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "tmdb_token",
        "tmdb_api_key",
        "tmdb_config_url",
        "tmdb_fallback_credential",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @property
    def has_tmdb_credentials(self) -> bool:
        """Return whether a static TMDB credential is configured."""

        return bool(
            self.tmdb_token or self.tmdb_api_key or self.tmdb_fallback_credential
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
