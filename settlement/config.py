import logging
from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SettlementSettings(BaseSettings):
    """Policy constants and adapter settings, overridable via SETTLEMENT_* env vars."""

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_", env_file=".env", extra="ignore")

    deposit_min: Decimal = Decimal("40")
    deposit_max: Decimal = Decimal("5000")
    withdrawal_min: Decimal = Decimal("30")
    withdrawal_max: Decimal = Decimal("5000")

    bonus_threshold: Decimal = Decimal("200")
    bonus_rate: Decimal = Decimal("0.5")

    commission_level1_rate: Decimal = Decimal("0.20")
    commission_level2_rate: Decimal = Decimal("0.05")

    mercadopago_token: Optional[str] = Field(default=None, description="Mercado Pago access token")
    mercadopago_base_url: str = "https://api.mercadopago.com"
    gateway_timeout_seconds: float = 30.0
    notification_url: Optional[str] = None
    payer_email_domain: str = "itambe.com"

    payout_mode: Literal["simulated", "live"] = "simulated"
    transaction_max_attempts: int = 5
    daily_yield_enabled: bool = False

    log_level: str = "INFO"

    @field_validator("bonus_rate", "commission_level1_rate", "commission_level2_rate")
    @classmethod
    def _rate_is_fraction(cls, value: Decimal) -> Decimal:
        if value < 0 or value > 1:
            raise ValueError("rate must be between 0 and 1")
        return value

    @field_validator("transaction_max_attempts")
    @classmethod
    def _positive_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("transaction_max_attempts must be at least 1")
        return value

    @model_validator(mode="after")
    def _bounds_ordered(self) -> "SettlementSettings":
        if self.deposit_min > self.deposit_max:
            raise ValueError("deposit_min must not exceed deposit_max")
        if self.withdrawal_min > self.withdrawal_max:
            raise ValueError("withdrawal_min must not exceed withdrawal_max")
        return self


@lru_cache
def get_settings() -> SettlementSettings:
    return SettlementSettings()


def configure_logging(settings: Optional[SettlementSettings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
