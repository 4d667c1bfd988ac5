# src/gatherpay/config.py
"""
Application settings loaded from the environment / .env file.

`Settings` is the raw, environment-facing layer. Pipeline components never
read it directly: `PipelineConfig.from_settings()` freezes the values they
need once at boot and the resulting object is passed to each constructor.
"""

import json
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment / DB
    ENV: str = Field(default="dev")
    DATABASE_URL: str = Field(default="sqlite:///./dev.db")

    # API / Security
    API_KEY: str | None = None
    CORS_ORIGINS: str = "*"
    JWT_SECRET: str = Field(default="change-me-please")
    JWT_ALG: str = Field(default="HS256")
    JWT_EXPIRE_MIN: int = Field(default=43200)

    # Matching
    MATCHING_MODE: str = Field(default="auto")  # auto | ml | fallback
    ML_SERVICE_URL: str | None = Field(default="http://ml-service:8000")
    ML_TIMEOUT_MS: int = Field(default=2000)
    ML_ACCEPT_THRESHOLD: float = Field(default=0.6)
    FALLBACK_ACCEPT_THRESHOLD: float = Field(default=0.5)
    DEFAULT_SEARCH_RADIUS_KM: float = Field(default=10.0)

    # Participation / payments
    PAYMENT_WINDOW_MINUTES: int = Field(default=10)
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = Field(default=60)

    # Escrow
    ESCROW_COOLING_DAYS: int = Field(default=7)
    PLATFORM_FEE_PERCENT: int = Field(default=10)
    ESCROW_MAX_RETRIES: int = Field(default=3)
    ESCROW_RELEASE_CRON_HOUR: int = Field(default=2)

    # Refunds
    REFUND_FULL_HOURS_BEFORE: int = Field(default=24)
    REFUND_PARTIAL_HOURS_BEFORE: int = Field(default=6)
    REFUND_PARTIAL_PERCENT: int = Field(default=50)

    # External payment ledger
    LEDGER_API_URL: str | None = None
    LEDGER_API_KEY: str | None = None
    LEDGER_TIMEOUT_SECONDS: float = Field(default=10.0)
    LEDGER_WEBHOOK_SECRET: str | None = None

    # Display-only currency conversion
    FX_BASE_CURRENCY: str = Field(default="EUR")
    FX_RATES: str = Field(default='{"EUR": "1", "USD": "1.08", "GBP": "0.86", "CHF": "0.95"}')

    # Background jobs / observability
    SCHEDULER_ENABLED: bool = True
    METRICS_ENABLED: bool = True


settings = Settings()


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable knobs for the participation-to-settlement pipeline."""
    matching_mode: str = "auto"
    ml_service_url: str | None = None
    ml_timeout_seconds: float = 2.0
    ml_accept_threshold: float = 0.6
    fallback_accept_threshold: float = 0.5
    default_search_radius_km: float = 10.0

    payment_window: timedelta = timedelta(minutes=10)

    escrow_cooling_period: timedelta = timedelta(days=7)
    platform_fee_percent: int = 10
    escrow_max_retries: int = 3

    refund_full_hours_before: int = 24
    refund_partial_hours_before: int = 6
    refund_partial_percent: int = 50

    fx_base_currency: str = "EUR"
    fx_rates: Dict[str, Decimal] = field(default_factory=lambda: {"EUR": Decimal("1")})

    def __post_init__(self) -> None:
        if self.matching_mode not in ("auto", "ml", "fallback"):
            raise ValueError(f"Unsupported matching mode: {self.matching_mode!r}")
        if not (0 <= self.platform_fee_percent <= 100):
            raise ValueError("Platform fee percent must be between 0 and 100.")
        if not (0 <= self.refund_partial_percent <= 100):
            raise ValueError("Partial refund percent must be between 0 and 100.")
        if self.refund_partial_hours_before > self.refund_full_hours_before:
            raise ValueError("Partial refund threshold cannot exceed the full refund threshold.")
        if self.escrow_max_retries < 1:
            raise ValueError("Escrow retry ceiling must be at least 1.")

    @classmethod
    def from_settings(cls, s: Settings) -> "PipelineConfig":
        rates = {code.upper(): Decimal(str(rate)) for code, rate in json.loads(s.FX_RATES).items()}
        return cls(
            matching_mode=s.MATCHING_MODE.lower(),
            ml_service_url=s.ML_SERVICE_URL or None,
            ml_timeout_seconds=s.ML_TIMEOUT_MS / 1000.0,
            ml_accept_threshold=s.ML_ACCEPT_THRESHOLD,
            fallback_accept_threshold=s.FALLBACK_ACCEPT_THRESHOLD,
            default_search_radius_km=s.DEFAULT_SEARCH_RADIUS_KM,
            payment_window=timedelta(minutes=s.PAYMENT_WINDOW_MINUTES),
            escrow_cooling_period=timedelta(days=s.ESCROW_COOLING_DAYS),
            platform_fee_percent=s.PLATFORM_FEE_PERCENT,
            escrow_max_retries=s.ESCROW_MAX_RETRIES,
            refund_full_hours_before=s.REFUND_FULL_HOURS_BEFORE,
            refund_partial_hours_before=s.REFUND_PARTIAL_HOURS_BEFORE,
            refund_partial_percent=s.REFUND_PARTIAL_PERCENT,
            fx_base_currency=s.FX_BASE_CURRENCY.upper(),
            fx_rates=rates,
        )
