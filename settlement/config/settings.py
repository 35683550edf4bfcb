"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from settlement.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Gateway Configuration
    gateway_key_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("gateway_key_id", "razorpay_key_id"),
        description="Gateway public key id (rzp_test_... / rzp_live_...)",
    )
    gateway_key_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("gateway_key_secret", "razorpay_key_secret"),
        description="Gateway secret key, also the checkout signature secret",
    )
    gateway_webhook_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("gateway_webhook_secret", "razorpay_webhook_secret"),
        description="Secret configured on the gateway dashboard for webhooks",
    )
    gateway_base_url: str = Field(
        default="https://api.razorpay.com/v1", description="Gateway REST API base URL"
    )
    gateway_timeout_seconds: float = Field(default=10.0, description="Gateway request timeout")
    gateway_receipt_max_length: int = Field(
        default=40, description="Gateway limit on order receipt length"
    )

    # Billing
    default_currency: str = Field(default="INR", description="Default billing currency")
    subscription_total_count: int = Field(
        default=12, description="Billing cycles per subscription (12 months)"
    )
    subscription_period: str = Field(default="monthly", description="Plan billing period")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./settlement.db",
        description="Async SQLAlchemy database URL",
    )
    database_pool_size: int = Field(default=10, description="Database connection pool size")
    database_max_overflow: int = Field(default=20, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Redis Configuration
    redis_url: Optional[str] = Field(
        default=None, description="Redis URL for idempotency and webhook caches (optional)"
    )
    idempotency_cache_ttl: int = Field(
        default=86400, description="Idempotency cache TTL (seconds)"
    )
    webhook_dedup_ttl: int = Field(
        default=86400 * 7, description="How long processed webhook ids are remembered"
    )

    # Outbox / collaborators
    outbox_batch_size: int = Field(default=100, description="Outbox events per batch")
    outbox_poll_interval_seconds: float = Field(default=1.0, description="Outbox poll interval")
    rewards_webhook_url: Optional[str] = Field(default=None, description="Rewards collaborator")
    invoice_webhook_url: Optional[str] = Field(default=None, description="Invoice PDF collaborator")
    notification_webhook_url: Optional[str] = Field(
        default=None, description="Notification collaborator"
    )
    collaborator_timeout_seconds: float = Field(default=5.0, description="Collaborator timeout")

    # Subscription status refresh
    subscription_sync_interval_seconds: float = Field(
        default=900.0, description="Seconds between subscription status refreshes"
    )

    # Application Configuration
    app_name: str = Field(default="settlement-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("default_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currencies are 3-letter upper-case codes."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def require_gateway_credentials(self) -> Tuple[str, str]:
        """
        Return (key_id, key_secret) or fail.

        Raises:
            ConfigurationError: If either credential is missing
        """
        if not self.gateway_key_id or not self.gateway_key_secret:
            raise ConfigurationError(
                "Gateway API keys are not configured. "
                "Set GATEWAY_KEY_ID and GATEWAY_KEY_SECRET."
            )
        return self.gateway_key_id, self.gateway_key_secret

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def is_test_mode(self) -> bool:
        """Check if using gateway test keys."""
        return bool(self.gateway_key_id and self.gateway_key_id.startswith("rzp_test_"))

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
