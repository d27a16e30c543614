from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="pricequote-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Data
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    catalog_path: str | None = Field(default=None)
    price_cache_backend: str = Field(default="sql")  # sql|redis

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    quote_rate_limit: str = Field(default="120/minute")
    rate_limit_enabled: bool = Field(default=True)

    # Quoting
    quote_currency: str = Field(default="GBP", min_length=3, max_length=3)
    quote_ttl_hours: int = Field(default=24, ge=1)
    quote_missing_ratio_warning: float = Field(default=0.2, ge=0.0, le=1.0)
    quote_max_concurrency: int = Field(default=8, ge=1, le=64)
    quote_deadline_seconds: float = Field(default=10.0, gt=0, le=120)
    quote_log_enabled: bool = Field(default=True)

    # Price provider
    provider_base_url: str | None = Field(default=None)
    provider_api_key: str | None = Field(default=None)
    provider_timeout_seconds: float = Field(default=60.0, gt=0)
    provider_max_retries: int = Field(default=2, ge=0, le=10)

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @field_validator("price_cache_backend")
    @classmethod
    def _check_backend(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in {"sql", "redis"}:
            raise ValueError("price_cache_backend must be 'sql' or 'redis'")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
