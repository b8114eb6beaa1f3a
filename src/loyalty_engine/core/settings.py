from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    service_name: str = "loyalty-engine"
    log_level: str = "INFO"
    log_debug_categories: list[str] = Field(default_factory=list)

    # POS platform gateway
    pos_api_base_url: str = "https://connect.squareup.com/v2"
    pos_api_version: str = "2025-01-16"
    pos_request_timeout_seconds: float = 15.0
    pos_rate_limit_max_retries: int = 3
    pos_rate_limit_default_retry_after_seconds: float = 5.0
    pos_transient_max_retries: int = 2
    pos_transient_backoff_seconds: float = 1.0
    pos_access_token: str = ""
    pos_token_cache_ttl_seconds: int = 300

    # Loyalty engine
    loyalty_default_currency: str = "USD"
    loyalty_backfill_days: int = 7
    loyalty_catchup_period_days: int = 30
    loyalty_catchup_max_customers: int = 100
    loyalty_audit_default_days: int = 91
    loyalty_audit_max_months: int = 18
    loyalty_refresh_concurrency: int = 5
    loyalty_redemption_amount_ratio: float = 0.95
    loyalty_prefetch_page_size: int = 30
    loyalty_order_page_size: int = 50

    # Loyalty job scheduler
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"
    loyalty_job_merchant_ids: list[str] = Field(default_factory=list)

    @field_validator("loyalty_job_merchant_ids", "log_debug_categories", mode="before")
    @classmethod
    def _parse_csv_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
