"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Stripe Configuration
    stripe_secret_key: str = Field(default="", description="Stripe secret API key (sk_test_...)")
    stripe_publishable_key: str = Field(
        default="", description="Stripe publishable key (pk_test_...)"
    )
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_api_version: str = Field(default="2023-10-16", description="Stripe API version")

    # PayPal Configuration
    paypal_env: str = Field(default="sandbox", description="PayPal environment (sandbox/live)")
    paypal_client_id: str = Field(default="", description="PayPal REST app client ID")
    paypal_client_secret: str = Field(default="", description="PayPal REST app client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook ID for verification")

    # Authorize.Net Configuration
    authorize_net_env: str = Field(default="sandbox", description="Authorize.Net environment")
    authorize_net_api_login_id: str = Field(default="", description="Authorize.Net API login ID")
    authorize_net_transaction_key: str = Field(
        default="", description="Authorize.Net transaction key"
    )
    authorize_net_signature_key: str = Field(
        default="", description="Authorize.Net webhook signature key"
    )

    # Database Configuration
    database_url: str = Field(..., description="Database connection URL (async driver)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: str = Field(..., description="Redis connection URL")
    redis_lock_timeout: int = Field(default=30, description="Distributed lock timeout (seconds)")

    # Application Configuration
    app_name: str = Field(default="native-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")
    default_currency: str = Field(default="USD", description="Default ISO currency code")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Payment Processing
    minimum_charge_cents: int = Field(default=50, description="Smallest chargeable amount")
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="Webhook dedup cache TTL (seconds)"
    )
    invoice_due_days: int = Field(default=7, description="Days until an open invoice is due")

    # Subscription Billing
    billing_poll_interval_seconds: float = Field(
        default=60.0, description="Billing scheduler polling interval"
    )
    billing_batch_size: int = Field(default=100, description="Due subscriptions per cycle")
    billing_concurrency: int = Field(default=10, description="Concurrent billing attempts")
    billing_lease_seconds: int = Field(
        default=300, description="Lease held on a subscription during a billing attempt"
    )
    billing_max_retry_attempts: int = Field(
        default=3, description="Declined attempts before a subscription is suspended"
    )
    billing_retry_base_delay_hours: float = Field(
        default=24.0, description="Delay before the first retry after a decline"
    )
    billing_retry_max_delay_hours: float = Field(
        default=168.0, description="Upper bound for the retry delay"
    )
    billing_retry_backoff_multiplier: float = Field(
        default=2.0, description="Exponential backoff multiplier between retries"
    )
    billing_transient_retry_minutes: int = Field(
        default=30, description="Delay after a provider outage before trying again"
    )
    billing_exhausted_action: str = Field(
        default="suspend", description="What to do when retries run out (suspend/cancel)"
    )

    # Analytics
    analytics_snapshot_hour: int = Field(
        default=1, description="Hour (UTC) at which nightly snapshots are computed"
    )

    # Outbox
    outbox_stream: str = Field(
        default="native_payments:events", description="Redis stream receiving outbox events"
    )
    outbox_stream_maxlen: int = Field(
        default=100000, description="Approximate cap on the outbox stream length"
    )
    outbox_batch_size: int = Field(default=100, description="Outbox events per poll")
    outbox_poll_interval_seconds: float = Field(
        default=1.0, description="Outbox polling interval"
    )
    outbox_max_attempts: int = Field(
        default=10, description="Deliveries tried before an event is parked"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("stripe_secret_key")
    @classmethod
    def validate_stripe_key(cls, v: str) -> str:
        """Validate Stripe secret key format when one is configured."""
        if v and not v.startswith("sk_test_") and not v.startswith("sk_live_"):
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

    @field_validator("billing_exhausted_action")
    @classmethod
    def validate_exhausted_action(cls, v: str) -> str:
        """Retries can only end in suspension or cancellation."""
        if v.lower() not in ("suspend", "cancel"):
            raise ValueError("billing_exhausted_action must be 'suspend' or 'cancel'")
        return v.lower()

    @field_validator("billing_max_retry_attempts")
    @classmethod
    def validate_max_retry_attempts(cls, v: int) -> int:
        """Validate retry ceiling."""
        if v < 1:
            raise ValueError("billing_max_retry_attempts must be at least 1")
        return v

    @field_validator("default_currency")
    @classmethod
    def validate_default_currency(cls, v: str) -> str:
        """Validate currency format."""
        if len(v) != 3:
            raise ValueError("default_currency must be a 3-letter code")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_enabled_providers(self) -> List[str]:
        """Providers that have credentials configured."""
        enabled = []
        if self.stripe_secret_key:
            enabled.append("stripe")
        if self.paypal_client_id and self.paypal_client_secret:
            enabled.append("paypal")
        if self.authorize_net_api_login_id and self.authorize_net_transaction_key:
            enabled.append("authorize_net")
        return enabled

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
