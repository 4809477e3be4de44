"""Application configuration"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Consulting Billing API"
    VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Security
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_MINUTES: int = 1440  # 24 hours

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # URLs
    FRONTEND_URL: str = "http://localhost:5173"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str = "2023-10-16"
    # Country of new Connect (Express) accounts for consultants
    STRIPE_CONNECT_COUNTRY: str = "US"

    # Email
    RESEND_API_KEY: Optional[str] = None
    EMAIL_FROM_ADDRESS: str = "billing@example.com"
    EMAIL_FROM_NAME: str = "Consulting Billing"
    FINANCE_EMAIL: str = "finance@example.com"
    ADMIN_EMAIL: str = "admin@example.com"

    # Invoicing
    INVOICE_NUMBER_PREFIX: str = "INV"
    DEFAULT_CURRENCY: str = "USD"
    DEFAULT_PAYMENT_TERM_DAYS: int = 30
    PLATFORM_FEE_PERCENTAGE: float = 0.0

    # WHY: Payments larger than the amount due are a policy decision, not a
    # bug. "allow" keeps the overpayment (amount_due goes negative), "clamp"
    # applies only what is owed, "reject" refuses the payment.
    OVERPAYMENT_POLICY: str = "allow"

    # Bank transfer instructions sent to clients
    BANK_TRANSFER_ACCOUNT_NAME: str = "Consulting Marketplace Ltd"
    BANK_TRANSFER_ACCOUNT_NUMBER: str = "000000000"
    BANK_TRANSFER_ROUTING_NUMBER: str = "000000000"
    BANK_TRANSFER_BANK_NAME: str = "Example Bank"

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    OVERDUE_CHECK_INTERVAL_MINUTES: int = 60
    RECURRING_CHECK_INTERVAL_MINUTES: int = 60
    UPCOMING_REMINDER_INTERVAL_MINUTES: int = 720
    UPCOMING_REMINDER_DAYS: int = 3

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")


settings = Settings()
