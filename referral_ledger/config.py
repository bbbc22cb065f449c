from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_COMMISSION_RATES = {
    "tier-monthly": Decimal("0.20"),
    "tier-quarterly": Decimal("0.25"),
    "tier-annual": Decimal("0.30"),
}


class Settings(BaseSettings):
    """Ledger configuration, loaded from LEDGER_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"

    stripe_secret_key: Optional[SecretStr] = None
    stripe_webhook_secret: Optional[SecretStr] = None
    stripe_api_version: str = "2023-10-16"

    currency: str = "usd"
    min_payout_amount: Decimal = Field(default=Decimal("50"), ge=0)
    max_payout_amount: Decimal = Field(default=Decimal("10000"), gt=0)
    refund_window_days: int = Field(default=30, ge=0)
    leaderboard_size: int = Field(default=10, gt=0)
    commission_rates: dict[str, Decimal] = Field(
        default_factory=lambda: dict(DEFAULT_COMMISSION_RATES)
    )

    def rate_for_tier(self, tier: str) -> Decimal:
        return self.commission_rates.get(tier, Decimal("0"))


@lru_cache
def get_settings() -> Settings:
    return Settings()
