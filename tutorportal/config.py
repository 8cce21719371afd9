from functools import lru_cache
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class Settings(BaseModel):
    env: str = Field(default="dev", alias="ENV")
    timezone: str = Field(default="America/Vancouver", alias="TIMEZONE")

    database_url: str = Field(default="", alias="DATABASE_URL")
    postgres_db: str = Field(default="tutorportal", alias="POSTGRES_DB")
    postgres_user: str = Field(default="tutorportal", alias="POSTGRES_USER")
    postgres_password: str = Field(default="tutorportal", alias="POSTGRES_PASSWORD")
    postgres_host: str = Field(default="localhost", alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, alias="POSTGRES_PORT")

    jwt_secret: str = Field(default="secret", alias="JWT_SECRET")
    cron_secret: str = Field(default="", alias="CRON_SECRET")

    portal_url: str = Field(default="http://localhost:3000", alias="PORTAL_URL")

    payment_provider: str = Field(default="stub", alias="PAYMENT_PROVIDER")
    payment_currency: str = Field(default="CAD", alias="PAYMENT_CURRENCY")
    payment_api_url: str = Field(default="", alias="PAYMENT_API_URL")
    payment_api_key: str = Field(default="", alias="PAYMENT_API_KEY")
    payment_success_url: str = Field(
        default="http://localhost:3000/register/success", alias="PAYMENT_SUCCESS_URL"
    )
    payment_cancel_url: str = Field(
        default="http://localhost:3000/register", alias="PAYMENT_CANCEL_URL"
    )
    payment_webhook_secret: str = Field(default="", alias="PAYMENT_WEBHOOK_SECRET")
    payment_webhook_tolerance_seconds: int = Field(default=300, alias="PAYMENT_WEBHOOK_TOLERANCE_SECONDS")

    notification_provider: str = Field(default="log", alias="NOTIFICATION_PROVIDER")
    notification_api_url: str = Field(default="", alias="NOTIFICATION_API_URL")
    notification_api_key: str = Field(default="", alias="NOTIFICATION_API_KEY")
    http_timeout_seconds: float = Field(default=5.0, alias="HTTP_TIMEOUT_SECONDS")

    etransfer_hold_hours: int = Field(default=24, alias="ETRANSFER_HOLD_HOURS")
    approval_window_hours: int = Field(default=72, alias="APPROVAL_WINDOW_HOURS")
    referral_credit_amount: float = Field(default=50.0, alias="REFERRAL_CREDIT_AMOUNT")

    scheduler_enabled: bool = Field(default=False, alias="SCHEDULER_ENABLED")

    class Config:
        populate_by_name = True

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    load_dotenv(override=False)
    return Settings(**os.environ)
