"""
Application configuration loaded from environment variables / .env.

Merchant settings are never read as globals by the codec or the verifier:
callers build a MerchantConfig from Settings and pass it in.
"""
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class MerchantConfig(BaseModel):
    """Merchant identity encoded into every KHQR payload."""

    account_id: str
    merchant_name: str
    merchant_city: str
    settlement_currency: str = "USD"
    usd_to_khr_rate: Decimal = Decimal("4100")

    model_config = ConfigDict(frozen=True)


class Settings(BaseSettings):
    APP_NAME: str = "GameHost Settlement API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'settlement.db'}"
    SEED_DEMO_DATA: bool = False

    # --- Merchant ---
    MERCHANT_ACCOUNT_ID: str = "merchant@bakong"
    MERCHANT_NAME: str = "GameHost"
    MERCHANT_CITY: str = "Phnom Penh"
    SETTLEMENT_CURRENCY: str = "USD"
    USD_TO_KHR_RATE: Decimal = Decimal("4100")
    PAYMENT_VALIDITY_SECONDS: int = 15 * 60
    QR_IMAGE_BASE_URL: str = "https://api.qrserver.com/v1/create-qr-code/"

    # --- Gateways ---
    BAKONG_API_URL: str = "https://api-bakong.nbc.gov.kh"
    BAKONG_TOKEN: Optional[str] = None
    BAKONG_WEBHOOK_SECRET: Optional[str] = None
    IKHODE_WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_TOLERANCE_SECONDS: int = 5 * 60
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # --- Provisioning panel ---
    PROVISIONING_URL: str = "http://localhost:8080/provisioning"
    PROVISIONING_TOKEN: Optional[str] = None
    PROVISIONING_TIMEOUT_SECONDS: float = 20.0
    DEFAULT_BILLING_DAYS: int = 30

    model_config = SettingsConfigDict(
        env_file=str(BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    def merchant_config(self) -> MerchantConfig:
        return MerchantConfig(
            account_id=self.MERCHANT_ACCOUNT_ID,
            merchant_name=self.MERCHANT_NAME,
            merchant_city=self.MERCHANT_CITY,
            settlement_currency=self.SETTLEMENT_CURRENCY.upper(),
            usd_to_khr_rate=self.USD_TO_KHR_RATE,
        )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
