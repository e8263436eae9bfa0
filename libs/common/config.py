from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "test", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Supabase
    # Default placeholder values keep local/test runs from failing when Supabase
    # credentials are not required. Real deployments should override via env.
    SUPABASE_URL: str = "http://localhost"
    SUPABASE_ANON_KEY: str = "test-anon-key"
    SUPABASE_SERVICE_ROLE_KEY: str = "test-service-role-key"
    SUPABASE_JWT_SECRET: str = "test-jwt-secret"

    # Stripe Connect
    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_BASE_URL: str = "https://api.stripe.com"
    STRIPE_CURRENCY: str = "usd"

    # Worker
    REDIS_URL: str = "redis://localhost:6379/0"

    # Handoff protocol
    CONFIRMATION_WINDOW_SECONDS: int = 30
    # Vendor may not fulfill while a buyer confirmation sits unanswered this
    # long past its window
    HANDOFF_LOCKDOWN_GRACE_SECONDS: int = 270

    # Platform fees (percent values, flat fees in cents)
    BUYER_FEE_PERCENT: float = 6.5
    BUYER_FLAT_FEE_CENTS: int = 15
    VENDOR_FEE_PERCENT: float = 6.5
    VENDOR_FLAT_FEE_CENTS: int = 15
    # Seller side of the fee on orders paid outside the platform
    EXTERNAL_SELLER_FEE_PERCENT: float = 3.5

    # Fee balance
    AUTO_DEDUCT_MAX_PERCENT: int = 100
    FEE_BALANCE_INVOICE_THRESHOLD_CENTS: int = 5000
    FEE_BALANCE_INVOICE_AGE_DAYS: int = 40

    # Failed payout retries
    PAYOUT_RETRY_MAX_AGE_DAYS: int = 7
    PAYOUT_RETRY_BATCH_SIZE: int = 10

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
