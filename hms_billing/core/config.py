from decimal import Decimal
from typing import List, Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "Hospital Billing Core"
    API_V1_STR: str = "/api/v1"
    DEBUG: bool = False

    # Database
    POSTGRES_SERVER: Optional[str] = None
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[str] = None
    POSTGRES_DB: Optional[str] = None
    POSTGRES_PORT: str = "5432"
    DATABASE_URL: Optional[str] = None
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10

    @model_validator(mode='after')
    def assemble_db_connection(self) -> 'Settings':
        if not self.DATABASE_URL:
            if all([self.POSTGRES_USER, self.POSTGRES_PASSWORD, self.POSTGRES_SERVER, self.POSTGRES_DB]):
                self.DATABASE_URL = (
                    f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@"
                    f"{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
                )
            else:
                self.DATABASE_URL = "sqlite+aiosqlite:///./hms_billing.db"

        if self.DATABASE_URL.startswith("postgresql://"):
            self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.DATABASE_URL.startswith("sqlite:///"):
            self.DATABASE_URL = self.DATABASE_URL.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

        return self

    # Logging
    LOG_LEVEL: str = "INFO"

    # Billing defaults, overridden at runtime by billing_settings rows
    DEFAULT_TAX_RATE: Decimal = Decimal("0")
    DEFAULT_CURRENCY: str = "USD"
    PAYMENT_DUE_DAYS: int = 30
    ENABLE_DISCOUNTS: bool = True
    ENABLE_PARTIAL_PAYMENTS: bool = True
    MINIMUM_PAYMENT_AMOUNT: Decimal = Decimal("0")
    ACCEPTED_PAYMENT_METHODS: List[str] = [
        "cash", "credit_card", "debit_card", "check",
        "bank_transfer", "mobile_money", "online", "insurance",
    ]

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalise_log_level(cls, v: str) -> str:
        return v.upper()

    # Insurance claims: when set, a decision is only accepted after the
    # claim has been moved to pending review.
    CLAIMS_REQUIRE_PENDING_REVIEW: bool = False

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra='ignore')


settings = Settings()
