"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="billing-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Gateway Configuration
    gateway_base_url: str = Field(
        default="http://localhost:8080/api", description="Payment backend base URL"
    )
    gateway_api_token: Optional[str] = Field(
        default=None, description="Bearer token sent with every gateway request"
    )
    gateway_timeout_seconds: float = Field(
        default=15.0, description="Per-request HTTP timeout (seconds)"
    )
    initiate_payment_path: str = Field(
        default="/initiate-payment", description="Mobile-money initiation endpoint"
    )
    payment_status_path: str = Field(
        default="/payment-status", description="Payment status endpoint (id is appended)"
    )
    school_balance_path: str = Field(
        default="/school-balance", description="School balance endpoint (school id is appended)"
    )

    # Payment Reconciliation
    payment_poll_interval_seconds: float = Field(
        default=10.0, description="Seconds between payment status checks"
    )
    payment_deadline_seconds: float = Field(
        default=120.0, description="Seconds to wait for approval before timing out"
    )
    countdown_tick_seconds: float = Field(
        default=1.0, description="Countdown display refresh interval (seconds)"
    )
    balance_retry_attempts: int = Field(
        default=3, description="Attempts for idempotent balance lookups"
    )

    model_config = SettingsConfigDict(
        env_prefix="BILLING_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator(
        "gateway_timeout_seconds",
        "payment_poll_interval_seconds",
        "payment_deadline_seconds",
        "countdown_tick_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Timings must be strictly positive."""
        if v <= 0:
            raise ValueError("Timing values must be positive")
        return v

    @field_validator("balance_retry_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("balance_retry_attempts must be at least 1")
        return v

    @field_validator("gateway_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_polling_window(self) -> "Settings":
        """The poll interval must fit inside the approval deadline."""
        if self.payment_poll_interval_seconds > self.payment_deadline_seconds:
            raise ValueError(
                "payment_poll_interval_seconds cannot exceed payment_deadline_seconds"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
