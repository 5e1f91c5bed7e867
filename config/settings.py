"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(..., description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(default="", description="Stripe publishable key (pk_test_...)")
    stripe_webhook_secret: str = Field(..., description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")
    currency: str = Field(default="eur", description="Ledger and payout currency")

    # Stripe Connect
    connect_account_type: str = Field(default="express", description="Connect account type")
    connect_country: str = Field(default="FR", description="Default Connect account country")
    connect_refresh_url: str = Field(
        default="https://klipz.app/connect/retry",
        description="Where Stripe sends the user when an onboarding link expires",
    )
    connect_return_url: str = Field(
        default="https://klipz.app/connect/success",
        description="Where Stripe sends the user after onboarding",
    )

    # Checkout
    checkout_success_url: str = Field(
        default="https://klipz.app/success?session_id={CHECKOUT_SESSION_ID}",
        description="Checkout success redirect",
    )
    checkout_cancel_url: str = Field(
        default="https://klipz.app/cancel", description="Checkout cancel redirect"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    webhook_dedup_cache_enabled: bool = Field(
        default=True, description="Consult Redis before the database for replayed webhooks"
    )
    webhook_dedup_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed webhook ids stay cached"
    )

    # Application Configuration
    app_name: str = Field(default="klipz-payouts", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:8081,http://localhost:19006",
        description="CORS allowed origins (comma-separated)"
    )

    # Amount bounds (major currency units)
    min_deposit_amount: Decimal = Field(default=Decimal("1.00"), description="Provider minimum")
    max_deposit_amount: Decimal = Field(
        default=Decimal("999999.99"), description="Provider maximum"
    )
    product_max_deposit_amount: Decimal = Field(
        default=Decimal("50000.00"), description="Largest recharge the product accepts"
    )

    # Payouts
    min_payout_amount: Decimal = Field(
        default=Decimal("1.00"), description="Smallest amount sent to a Connect account"
    )
    auto_payout_threshold: Optional[Decimal] = Field(
        default=None,
        description="Settle ready submissions automatically once earnings reach this amount",
    )
    default_cpm_rate: Decimal = Field(
        default=Decimal("0.03"), description="CPM used when a campaign has none"
    )
    payout_recovery_interval_seconds: int = Field(
        default=300, description="How often stuck withdrawals are resumed"
    )
    payout_stale_after_seconds: int = Field(
        default=600, description="Age after which an in-flight withdrawal counts as stuck"
    )

    # Reconciliation
    reconciliation_hour: int = Field(default=2, description="Hour of day for reconciliation")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate that Stripe secret key is a test or live key."""
        if not v.startswith("sk_test_") and not v.startswith("sk_live_"):
            raise ValueError(
                "Invalid Stripe secret key format. Must start with 'sk_test_' or 'sk_live_'"
            )
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currencies are three-letter codes, lower case for Stripe."""
        if len(v) != 3:
            raise ValueError("Currency must be a 3-letter code")
        return v.lower()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using Stripe test mode."""
        return self.stripe_secret_key.startswith("sk_test_")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
