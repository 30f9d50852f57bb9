"""Application configuration loaded from environment variables."""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Stripe
    STRIPE_API_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_TIMEOUT_SECONDS: int = 30
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    BASE_URL: str = "http://localhost:3000"
    DEFAULT_CURRENCY: str = "usd"

    # Platform fee. "block" charges a flat amount per completed threshold
    # block, "bps" charges a percentage once the monthly threshold is reached.
    FEE_POLICY: str = "block"
    THRESHOLD_CENTS: int = 5000
    FEE_PER_BLOCK_CENTS: int = 333
    MONTHLY_THRESHOLD_CENTS: int = 5000
    PLATFORM_FEE_BPS: int = 330

    # Earnings dashboard
    TRAILING_PERIODS: int = 3
    PAYOUT_HISTORY_LIMIT: int = 50

    # Payout job
    PAYOUTS_DISABLED: bool = False
    ADMIN_API_TOKEN: str = ""

    # Tickets awaiting a decision longer than this are expired and released
    TICKET_EXPIRY_DAYS: int = 7

    # CORS - can be "*" for all origins or comma-separated list
    CORS_ORIGINS: str = "*"

    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("FEE_POLICY", "DEFAULT_CURRENCY", mode="before")
    @classmethod
    def lowercase(cls, v: str) -> str:
        return v.strip().lower() if isinstance(v, str) else v

    @property
    def cors_origins(self) -> list[str]:
        if self.CORS_ORIGINS.strip() == "*":
            return ["*"]
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
