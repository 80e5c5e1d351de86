from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./campaign_engine.db"
    database_echo: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    otel_tracing_enabled: bool = False
    otel_sample_ratio: float = 1.0
    otel_service_name: str = "campaign-engine"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None

    # Audience resolution
    audience_default_inactive_days: int = 30
    audience_member_page_limit: int = 5000

    # Promo codes
    promo_code_default_prefix: str = "PROMO"
    promo_code_suffix_length: int = 8
    promo_code_generation_attempts: int = 10
    promo_redeem_max_attempts: int = 5
    promo_redeem_backoff_seconds: float = 0.05
    promo_redeem_backoff_max_seconds: float = 1.0

    # Campaign dispatch worker
    campaign_dispatch_worker_enabled: bool = False
    campaign_dispatch_interval_seconds: int = 60
    campaign_dispatch_batch_size: int = 25
    campaign_dispatch_trigger_label: str = "scheduler"
    campaign_ab_variants: list[str] = Field(default_factory=lambda: ["A", "B"])

    @field_validator("campaign_ab_variants", mode="before")
    @classmethod
    def _parse_variant_list(cls, value: object) -> list[str]:
        if value is None:
            return ["A", "B"]
        if isinstance(value, str):
            return [item.strip().upper() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().upper() for item in value if str(item).strip()]
        return ["A", "B"]

    @field_validator("promo_code_default_prefix", mode="before")
    @classmethod
    def _normalize_prefix(cls, value: object) -> str:
        text = str(value or "").strip().upper()
        return text or "PROMO"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
