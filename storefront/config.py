from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Storefront Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    APP_URL: str = "http://localhost:8000"  # Public base URL, used for provider webhook URLs

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Admin payout review (authentication proper lives outside this service)
    ADMIN_API_TOKEN: str = ""

    # Payment providers
    DEFAULT_PAYMENT_PROVIDER: str = "pushin_pay"  # Used when a store has no enabled payment method
    GATEWAY_TIMEOUT_SECONDS: float = 30.0

    PUSHIN_PAY_TOKEN: str = ""  # Platform token
    PUSHIN_PAY_SANDBOX: bool = False
    PUSHIN_PAY_API_URL: str = "https://api.pushinpay.com.br/api"
    PUSHIN_PAY_SANDBOX_API_URL: str = "https://api-sandbox.pushinpay.com.br/api"

    MERCADO_PAGO_ACCESS_TOKEN: str = ""  # Platform access token
    MERCADO_PAGO_API_URL: str = "https://api.mercadopago.com"

    # Payment split
    SPLIT_PLATFORM_ACCOUNT_ID: Optional[str] = None  # Platform payee injected into every split plan
    SPLIT_PLATFORM_PERCENTAGE: Decimal = Decimal("0")
    SPLIT_MAX_TOTAL_PERCENTAGE: Decimal = Decimal("50")
    SPLIT_MAX_RULES: int = 6

    # Coupons
    COUPON_CAP_FIXED_DISCOUNT: bool = False  # Fixed discounts are applied verbatim unless enabled

    # Wallet fees applied when a sale is credited
    WALLET_GATEWAY_FIXED_FEE: Decimal = Decimal("0.70")
    WALLET_PLATFORM_FEE_PERCENT: Decimal = Decimal("3")

    # Withdrawals
    WITHDRAWAL_MIN: Decimal = Decimal("5.00")
    WITHDRAWAL_MAX: Decimal = Decimal("50000.00")
    WITHDRAWAL_MAX_PER_DAY: int = 10

    # Webhooks
    WEBHOOK_VERIFY_WITH_PROVIDER: bool = True  # Re-fetch charge status instead of trusting the push
    WEBHOOK_SECRET: Optional[str] = None  # Optional HMAC secret for inbound provider webhooks
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Pending payment polling
    SCHEDULER_ENABLED: bool = True
    PAYMENT_POLL_INTERVAL_MINUTES: int = 5
    PAYMENT_POLL_MIN_AGE_MINUTES: int = 2
    PAYMENT_POLL_BATCH_SIZE: int = 50

    # Unpaid order expiry
    ORDER_RESERVATION_TTL_MINUTES: int = 30  # Unpaid pending orders release their keys after this
    ORDER_EXPIRY_INTERVAL_MINUTES: int = 10

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
