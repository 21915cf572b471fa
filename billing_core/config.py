"""
Configuration management for the billing service.

Uses Pydantic Settings for type-safe configuration with multiple sources:
- Environment variables (highest priority)
- .env file
- Defaults (lowest priority)

Provider credentials are optional: a provider whose credentials are absent is
simply not registered at startup.
"""

import logging
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StripeConfig(BaseSettings):
    """
    Stripe credentials.

    Security: secret keys are never logged or exposed in errors.
    """

    model_config = SettingsConfigDict(
        env_prefix="STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    secret_key: str = Field(default="", description="Stripe secret API key (sk_...)")
    webhook_secret: str = Field(default="", description="Stripe webhook signing secret (whsec_...)")
    api_version: str | None = Field(
        default=None, description="Pin Stripe API version (None = account default)"
    )

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Reject publishable keys passed in place of the secret key."""
        if v and v.startswith("pk_"):
            raise ValueError("STRIPE_SECRET_KEY must be a secret key, got a publishable key")
        return v

    @property
    def is_configured(self) -> bool:
        """Stripe is usable once a secret key is present."""
        return bool(self.secret_key)


class FlutterwaveConfig(BaseSettings):
    """Flutterwave v3 credentials."""

    model_config = SettingsConfigDict(
        env_prefix="FLUTTERWAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    public_key: str = Field(default="")
    secret_key: str = Field(default="")
    webhook_secret: str = Field(default="", description="Secret hash used to sign webhooks")
    base_url: str = Field(default="https://api.flutterwave.com/v3")
    tx_ref_prefix: str = Field(default="billing", description="Prefix for checkout tx_ref values")

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


class ProviderPolicyConfig(BaseSettings):
    """
    Timeout, retry and circuit breaker policy for outbound provider calls.

    Retries are off by default (max_attempts=1): a failed call is reported to the
    caller, who decides whether to try again.
    """

    model_config = SettingsConfigDict(env_prefix="PROVIDER_", extra="ignore")

    timeout_seconds: float = Field(default=20.0, gt=0, le=120)
    max_attempts: int = Field(default=1, ge=1, le=10)
    retry_min_wait_seconds: float = Field(default=0.5, ge=0)
    retry_max_wait_seconds: float = Field(default=8.0, ge=0)

    # Circuit breaker (per provider)
    breaker_fail_max: int = Field(default=5, ge=1)
    breaker_reset_seconds: int = Field(default=30, ge=1)

    @field_validator("retry_max_wait_seconds")
    @classmethod
    def validate_wait_window(cls, v: float, info) -> float:
        min_wait = info.data.get("retry_min_wait_seconds")
        if min_wait is not None and v < min_wait:
            raise ValueError("retry_max_wait_seconds must be >= retry_min_wait_seconds")
        return v


class BillingPolicyConfig(BaseSettings):
    """Dunning, grace period and plan enforcement policy."""

    model_config = SettingsConfigDict(env_prefix="BILLING_", extra="ignore")

    grace_period_days: int = Field(
        default=7, ge=1, le=60, description="Days of access kept after the first failed payment"
    )
    max_payment_retries: int = Field(
        default=4, ge=1, description="Retry count at which the final dunning notice is sent"
    )
    storage_grace_days: int = Field(
        default=30, ge=1, description="Days to reduce storage after a downgrade"
    )
    free_plan_slug: str = Field(default="free")

    # Trial expiry: "webhook_only" waits for the provider, "sweep" lets a scheduled
    # job move overdue trials into the grace period.
    trial_expiry_mode: Literal["webhook_only", "sweep"] = Field(default="webhook_only")
    trial_expiry_grace_hours: int = Field(default=24, ge=0)

    history_limit: int = Field(default=50, ge=1, le=500)
    max_grace_extension_days: int = Field(default=30, ge=1)
    web_url: str = Field(default="http://localhost:3000", description="Base URL for billing links")
    webhook_retention_days: int = Field(default=7, ge=1)


class DatabaseConfig(BaseSettings):
    """Billing data store location."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", extra="ignore")

    path: str = Field(default="./data/billing.db")


class ServiceConfig(BaseSettings):
    """FastAPI service configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)


class LoggingConfig(BaseSettings):
    """Structured logging configuration."""

    model_config = SettingsConfigDict(env_prefix="LOGGING_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )

    # Output format
    json_output: bool = Field(
        default=True, description="Use JSON output (True for production, False for development)"
    )
    colorized: bool = Field(
        default=False, description="Colorize console output (only for development)"
    )

    # Service metadata (injected into all logs)
    service_name: str = Field(default="billing-core", description="Service name for log aggregation")
    service_version: str = Field(default="0.1.0", description="Service version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )


class Settings(BaseSettings):
    """Root configuration for the billing service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    stripe: StripeConfig = Field(default_factory=StripeConfig)
    flutterwave: FlutterwaveConfig = Field(default_factory=FlutterwaveConfig)
    provider_policy: ProviderPolicyConfig = Field(default_factory=ProviderPolicyConfig)
    billing: BillingPolicyConfig = Field(default_factory=BillingPolicyConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Admin endpoints (past-due listing, grace extension)
    admin_api_key: str | None = Field(default=None)

    def validate_configuration(self) -> None:
        """
        Validate cross-field constraints and log warnings.
        Called at application startup.
        """
        if not self.stripe.is_configured and not self.flutterwave.is_configured:
            logging.warning("No payment provider configured - billing operations will fail")

        if self.stripe.is_configured and not self.stripe.webhook_secret:
            logging.warning("Stripe webhook secret not configured - Stripe webhooks will be rejected")

        if self.flutterwave.is_configured and not self.flutterwave.webhook_secret:
            logging.warning(
                "Flutterwave webhook secret not configured - Flutterwave webhooks will be rejected"
            )

        if self.provider_policy.max_attempts > 1:
            logging.warning(
                f"Provider calls retry up to {self.provider_policy.max_attempts} times - "
                "make sure provider operations are idempotent"
            )


# Global settings instance (lazy-loaded)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get global settings instance (singleton pattern).

    Returns:
        Settings: Application configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
        _settings.validate_configuration()
    return _settings
