from __future__ import annotations

from functools import cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SUPPORTED_CURRENCIES = (
    "USD",
    "EUR",
    "GBP",
    "JPY",
    "CHF",
    "CAD",
    "AUD",
    "NZD",
    "CNY",
    "HKD",
    "SGD",
    "SEK",
    "NOK",
    "INR",
    "MXN",
)


class AppSettings(BaseSettings):
    database_url: str = "sqlite:///fx_quotes.db"
    db_timeout_seconds: float = Field(default=5.0, gt=0)

    supported_currencies: list[str] = Field(default_factory=lambda: list(DEFAULT_SUPPORTED_CURRENCIES))
    rate_sources: list[str] = Field(default_factory=lambda: ["frankfurter", "exchangerate_host"])

    frankfurter_base_url: str = "https://api.frankfurter.dev/v1"
    frankfurter_timeout_seconds: float = Field(default=5.0, gt=0)
    exchangerate_host_base_url: str = "https://api.exchangerate.host"
    exchangerate_host_api_key: str = ""
    exchangerate_host_timeout_seconds: float = Field(default=5.0, gt=0)
    http_retry_attempts: int = Field(default=2, ge=0)
    http_retry_backoff_seconds: float = Field(default=0.5, ge=0)

    latest_price_ttl_seconds: int = Field(default=600, gt=0)
    source_price_ttl_seconds: int = Field(default=300, gt=0)

    worker_concurrency: int = Field(default=1, gt=0)
    task_max_retry: int = Field(default=3, ge=0)
    task_timeout_seconds: float = Field(default=30.0, gt=0)
    worker_poll_interval_seconds: float = Field(default=5.0, gt=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("supported_currencies")
    @classmethod
    def _normalize_currencies(cls, value: list[str]) -> list[str]:
        codes = [code.strip().upper() for code in value if code.strip()]
        if not codes:
            raise ValueError("supported_currencies must contain at least one entry")
        return codes

    @field_validator("rate_sources")
    @classmethod
    def _normalize_sources(cls, value: list[str]) -> list[str]:
        return [name.strip().lower() for name in value if name.strip()]


@cache
def config() -> AppSettings:
    return AppSettings()
