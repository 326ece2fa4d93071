"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000)

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Ledger database
    DATABASE_URL: str = Field(default="")

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")

    # JWT Authentication
    JWT_SECRET: str = Field(default="change-this-secret-in-production-please")
    JWT_ALGORITHM: str = Field(default="HS256")

    # CORS
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    # Product allow-list. Anything not listed here is rejected even if the
    # platform confirms payment for it.
    ALLOWED_PRODUCT_IDS: str = Field(
        default="super_payments_monthly,premium_monthly,premium_annual"
    )
    # product_id:plan_type:amount:currency entries, comma separated
    PRODUCT_CATALOG: str = Field(
        default=(
            "super_payments_monthly:super_payments_monthly:1.99:USD,"
            "premium_monthly:premium_monthly:9.99:USD,"
            "premium_annual:premium_annual:99.99:USD"
        )
    )

    # app_store_a (purchase lookup API)
    GOOGLE_PLAY_PACKAGE_NAME: str = Field(default="")
    GOOGLE_PLAY_ACCESS_TOKEN: str = Field(default="")
    GOOGLE_PLAY_API_BASE: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3"
    )

    # app_store_b (receipt verification endpoint)
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_PRODUCTION_URL: str = Field(default="https://buy.itunes.apple.com/verifyReceipt")
    APPLE_SANDBOX_URL: str = Field(default="https://sandbox.itunes.apple.com/verifyReceipt")

    # External call policy
    PLATFORM_REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0)
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_SECONDS: float = Field(default=2.0, ge=0)

    # Reconciliation
    SUBSCRIPTION_GRACE_PERIOD_DAYS: int = Field(default=7, ge=0)
    RENEWAL_LOOKAHEAD_DAYS: int = Field(default=3, ge=0)
    SWEEP_BATCH_SIZE: int = Field(default=500, ge=1)
    SCHEDULER_ENABLED: bool = Field(default=False)

    # Webhooks
    WEBHOOK_SHARED_SECRET: Optional[str] = Field(default=None)

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def allowed_product_ids_list(self) -> List[str]:
        """Parse ALLOWED_PRODUCT_IDS into a list."""
        return [pid.strip() for pid in self.ALLOWED_PRODUCT_IDS.split(",") if pid.strip()]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        if self.DATABASE_URL.startswith("postgresql://"):
            return self.DATABASE_URL.replace(
                "postgresql://", "postgresql+asyncpg://", 1
            )
        return self.DATABASE_URL

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
