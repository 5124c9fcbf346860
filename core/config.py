# ==================================================================================
# core/config.py: StudioDesk Configuration (Stripe + SendGrid + Pydantic v2)
# ==================================================================================
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import EmailStr, ValidationError
from typing import Optional
import sys


class Settings(BaseSettings):
    # ------------------------
    # DATABASE CONFIG
    # ------------------------
    DATABASE_URL: str = "sqlite:///./studiodesk.db"

    # ------------------------
    # SECURITY CONFIG
    # ------------------------
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ------------------------
    # SENDGRID EMAIL CONFIG
    # ------------------------
    SENDGRID_API_KEY: Optional[str] = None
    MAIL_FROM: Optional[EmailStr] = None

    # ------------------------
    # FRONTEND CONFIG
    # ------------------------
    FRONTEND_URL: str = "http://localhost:3000"

    # ------------------------
    # STRIPE / PAYMENT CONFIG
    # ------------------------
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    STRIPE_MAX_NETWORK_RETRIES: int = 2

    # Recurring price per maintenance tier
    STRIPE_PRICE_ESSENTIALS: Optional[str] = None
    STRIPE_PRICE_DIRECTOR: Optional[str] = None
    STRIPE_PRICE_COO: Optional[str] = None

    # Fallback billing period when the processor does not report one
    DEFAULT_BILLING_PERIOD_DAYS: int = 30

    @property
    def HOUR_PACK_SUCCESS_URL(self) -> str:
        """Where Stripe sends the client after an hour pack purchase."""
        return f"{self.FRONTEND_URL}/client/hours/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def HOUR_PACK_CANCEL_URL(self) -> str:
        return f"{self.FRONTEND_URL}/client/hours"

    def stripe_price_for_tier(self, tier: str) -> Optional[str]:
        """Recurring Stripe price id configured for a maintenance tier."""
        return getattr(self, f"STRIPE_PRICE_{tier.upper()}", None)

    # ------------------------
    # ENVIRONMENT SETTINGS
    # ------------------------
    ENVIRONMENT: str = "development"  # 'development' | 'production'
    DEBUG: bool = True

    @property
    def IS_PRODUCTION(self) -> bool:
        """Convenience helper to check if running in production"""
        return self.ENVIRONMENT.lower() == "production"

    # ------------------------
    # Pydantic v2 Settings
    # ------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# ------------------------
# Global Settings Loader
# ------------------------
try:
    settings = Settings()
    print("✅ Environment variables loaded successfully.")
    print(f"🌍 Environment: {settings.ENVIRONMENT}, Debug: {settings.DEBUG}")
except ValidationError as e:
    print("❌ Environment configuration error: missing or invalid settings!")
    print(e)
    sys.exit(1)
