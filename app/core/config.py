"""
Leasehold Core Application Configuration
Loads settings from .env file using Pydantic v2 with BaseSettings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # ==================== Project Info ====================
    PROJECT_NAME: str = "Leasehold Core API"
    PROJECT_DESCRIPTION: str = "Lease execution, e-signature and payment ledger service"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"

    # ==================== Database ====================
    DATABASE_URL: str = "sqlite:///leasehold_local.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_POOL_RECYCLE: int = 3600

    # ==================== Security & Authentication ====================
    # Tokens are minted by the external auth service; we only decode them.
    SECRET_KEY: str = "change-this-in-production-0123456789"
    ALGORITHM: str = "HS256"

    # ==================== CORS & Frontend ====================
    FRONTEND_URL: str = "http://localhost:5173"
    PORTAL_URL: str = "http://localhost:5174"
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:5174",
    ]

    # ==================== Server Configuration ====================
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ==================== E-Signature ====================
    SIGNING_TOKEN_TTL_HOURS: int = 168  # 7 days

    # ==================== Stripe Configuration ====================
    STRIPE_SECRET_KEY: str = ""
    STRIPE_API_URL: str = "https://api.stripe.com/v1"
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_TOLERANCE_SECONDS: int = 300
    WEBHOOK_EVENT_RETENTION_DAYS: int = 30

    # ==================== Email Configuration ====================
    SMTP_SERVER: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    EMAIL_FROM: str = "noreply@leasehold.app"
    SEND_EMAILS: bool = False

    # ==================== Features ====================
    DEBUG: bool = False
    TESTING: bool = False
    LOG_LEVEL: str = "INFO"

    # ==================== Configuration Loading ====================
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="allow",  # Allow extra environment variables
        validate_default=True,
    )

    # ==================== Properties ====================
    @property
    def gateway_configured(self) -> bool:
        """Check if the payment gateway has credentials"""
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def email_configured(self) -> bool:
        """Check if email is properly configured"""
        return bool(self.SEND_EMAILS and self.SMTP_SERVER)


# ==================== Settings Singleton ====================
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Create default settings instance
settings = get_settings()


# ==================== Helper Functions ====================
def get_cors_origins() -> List[str]:
    """Get CORS allowed origins"""
    return settings.ALLOWED_ORIGINS


def is_testing() -> bool:
    """Check if running in testing mode"""
    return settings.TESTING
