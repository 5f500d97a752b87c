from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "oppdesc-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    sam_api_key: str | None = None
    listing_base_url: str = "https://api.sam.gov/opportunities/v2/search"
    listing_page_size: int = Field(default=100, ge=1, le=1000)
    listing_timeout_seconds: float = 30.0
    ingestion_window_days: int = Field(default=30, ge=1)
    fetch_timeout_seconds: float = 10.0
    fetch_max_body_bytes: int = 5 * 1024 * 1024
    lock_wait_seconds: float = 0.5
    ai_max_chars: int = Field(default=8000, gt=0)
    ai_max_paragraphs: int = Field(default=40, gt=0)
    backfill_rate_limit: float = Field(default=2.0, gt=0)
    backfill_workers: int = 3
    backfill_max_workers: int = 10
    backfill_max_retries: int = 3
    backfill_initial_backoff_seconds: float = 1.0
    otel_enabled: bool = True
    otel_service_name: str = "oppdesc"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="OPPDESC_", extra="ignore")


@dataclass(slots=True, frozen=True)
class ExtractorConfig:
    max_chars: int = 8000
    max_paragraphs: int = 40
    excerpt_target_chars: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> ExtractorConfig:
        return cls(max_chars=settings.ai_max_chars, max_paragraphs=settings.ai_max_paragraphs)


@dataclass(slots=True, frozen=True)
class BackfillConfig:
    workers: int = 3
    rate_limit: float = 2.0
    max_retries: int = 3
    initial_backoff_seconds: float = 1.0
    max_workers: int = 10

    @property
    def effective_workers(self) -> int:
        return min(max(1, self.workers), max(1, self.max_workers))

    @classmethod
    def from_settings(cls, settings: Settings, *, workers: int | None = None) -> BackfillConfig:
        return cls(
            workers=workers if workers is not None else settings.backfill_workers,
            rate_limit=settings.backfill_rate_limit,
            max_retries=max(1, settings.backfill_max_retries),
            initial_backoff_seconds=max(0.0, settings.backfill_initial_backoff_seconds),
            max_workers=settings.backfill_max_workers,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
