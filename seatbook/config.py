"""
This module contains the settings for the seat booking service.
"""
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
    )

    # Storage
    DATABASE_URL: str = "sqlite+aiosqlite:///seatbook.db"

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "db+sqlite:///seatbook-results.db"

    # Booking rules
    HOLD_DURATION_MINUTES: int = 10
    EXPIRY_SWEEP_MINUTES: int = 5
    REMINDER_SWEEP_MINUTES: int = 30
    REMINDER_LEAD_HOURS: int = 6

    # Operator identity
    OPERATOR_PHONE: str = "1234567890"
    OPERATOR_NAME: str = "Default Operator"

    # WhatsApp Cloud API
    WHATSAPP_ACCESS_TOKEN: Optional[str] = None
    WHATSAPP_PHONE_NUMBER_ID: Optional[str] = None
    WHATSAPP_API_VERSION: str = "v18.0"
    WHATSAPP_API_BASE: str = "https://graph.facebook.com"
    WHATSAPP_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_VERIFY_TOKEN: Optional[str] = None

    # Server
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"

    @property
    def hold_duration(self) -> timedelta:
        return timedelta(minutes=self.HOLD_DURATION_MINUTES)

    @property
    def reminder_lead(self) -> timedelta:
        return timedelta(hours=self.REMINDER_LEAD_HOURS)


@lru_cache
def get_settings() -> Settings:
    """
    Returns the process-wide settings, read once from the environment.
    """
    return Settings()


def configure_logging(level: str = "INFO"):
    """
    Configures the root logger for the API process and the Celery worker.
    """
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
