"""Application settings using Pydantic for environment-based configuration."""
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Configuration
    app_name: str = Field(default="marketplace-settlement", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Settlement
    default_currency: str = Field(default="USD", description="Currency for new orders")
    default_commission_rate: Decimal = Field(
        default=Decimal("10"), description="Platform commission rate (percent)"
    )
    vendor_commission_rates: Dict[str, Decimal] = Field(
        default_factory=dict, description="Vendor-specific commission rates (JSON object)"
    )
    category_commission_rates: Dict[str, Decimal] = Field(
        default_factory=dict, description="Category-specific commission rates (JSON object)"
    )
    return_window_days: int = Field(default=30, description="Days after delivery a return is accepted")
    payment_expiry_minutes: int = Field(
        default=60, description="Minutes before an unconfirmed payment expires"
    )

    # Optimistic concurrency
    max_conflict_retries: int = Field(
        default=5, description="Attempts before a version conflict is surfaced"
    )
    conflict_retry_base_delay: float = Field(
        default=0.05, description="Base delay for conflict retry backoff (seconds)"
    )

    # Gateway
    gateway_timeout_seconds: float = Field(
        default=10.0, description="Upper bound for a single gateway call (seconds)"
    )
    gateway_max_retries: int = Field(default=3, description="Attempts for transient gateway errors")
    stripe_secret_key: Optional[str] = Field(default=None, description="Stripe secret API key")
    stripe_webhook_secret: Optional[str] = Field(default=None, description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # Database Configuration
    database_url: Optional[str] = Field(default=None, description="Async SQLAlchemy connection URL")
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    processed_event_ttl_seconds: int = Field(
        default=86400 * 7, description="How long processed gateway event ids are remembered"
    )

    # Collaborators
    allow_in_memory_inventory: bool = Field(
        default=False,
        description="Allow the in-process inventory stand-in when running in production",
    )

    # Deferred side effects
    deferred_max_attempts: int = Field(default=8, description="Attempts before a deferred command is dead-lettered")
    deferred_poll_interval_seconds: float = Field(default=5.0, description="Deferred worker polling interval")
    reconciliation_interval_seconds: float = Field(
        default=300.0, description="Interval between scheduled reconciliation passes"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: Optional[str]) -> Optional[str]:
        """Validate Stripe secret key prefix when one is configured."""
        if v is not None and not v.startswith(("sk_test_", "sk_live_", "rk_")):
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

    @field_validator("default_commission_rate")
    @classmethod
    def validate_commission_rate(cls, v: Decimal) -> Decimal:
        """Commission is a percentage of the vendor subtotal."""
        if v < 0 or v > 100:
            raise ValueError("Commission rate must be between 0 and 100")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
