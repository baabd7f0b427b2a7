"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_title: str = "Benefit Grant API"
    api_version: str = "0.1.0"
    api_description: str = "Grants purchased credits and unlimited plans exactly once per payment"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "benefit-grant-api"

    # Grant protocol
    lock_wait_timeout_seconds: float = 10.0
    idempotency_cache_ttl_seconds: int = 3 * 60 * 60  # 3 hours
    cache_sweep_interval_seconds: int = 300

    # Receipt hook - disabled when URL is empty
    receipt_service_url: str = ""
    receipt_timeout_seconds: float = 10.0

    # Pricing policy
    courtesy_credits: int = 0  # Bonus added on top of every credit package
    unrecognized_amount_policy: Literal["approve", "manual_review"] = "approve"

    # Gateway statuses that count as a confirmed payment
    approved_payment_statuses: list[str] = ["approved", "paid", "pagado"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.lock_wait_timeout_seconds <= 0:
            errors.append("LOCK_WAIT_TIMEOUT_SECONDS must be positive")

        if self.idempotency_cache_ttl_seconds <= 0:
            errors.append("IDEMPOTENCY_CACHE_TTL_SECONDS must be positive")

        if self.courtesy_credits < 0:
            errors.append("COURTESY_CREDITS cannot be negative")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def receipts_enabled(self) -> bool:
        """Receipt hook is only wired when a receipt service is configured."""
        return bool(self.receipt_service_url)


# Global settings instance - validates at import time
settings = Settings()
