"""Configuration management for the contact and invitation service."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


class Settings(BaseModel):
    """Application configuration loaded from environment variables."""

    app_env: str = "dev"
    database_url: str = "sqlite:///./contacthub.db"
    cors_origins: list[str] = Field(default_factory=list)
    version: str = "0.1.0"
    log_level: str = "INFO"

    invite_base_url: str = "http://localhost:19006/invite"
    app_download_link: str = "https://fixrx.app/download"

    sms_provider: str = "console"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    email_provider: str = "console"
    sendgrid_api_key: str = ""
    email_from_address: str = "invites@fixrx.app"

    # A2P 10DLC throughput: one message per second, no bursts.
    sms_messages_per_second: float = Field(default=1.0, gt=0)
    sms_bucket_capacity: int = Field(default=1, ge=1)
    delivery_max_attempts: int = Field(default=3, ge=1)
    delivery_backoff_seconds: float = Field(default=0.5, ge=0)

    bulk_worker_limit: int = Field(default=10, ge=1)
    import_max_contacts: int = 1000
    sync_max_contacts: int = 5000
    invitation_bulk_cap: int = 1000
    invitation_expiry_days: int = 7
    resend_window_days: int = 30

    rate_limit_enabled: bool = True

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            if not value:
                return []
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        if isinstance(value, list):
            return value
        return []

    @field_validator("rate_limit_enabled", mode="before")
    @classmethod
    def parse_flag(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return value

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("sqlite+aiosqlite://"):
            return self.database_url
        if self.database_url.startswith("sqlite:///"):
            return self.database_url.replace("sqlite:///", "sqlite+aiosqlite:///")
        if self.database_url.startswith("sqlite://"):
            return self.database_url.replace("sqlite://", "sqlite+aiosqlite://")
        return self.database_url

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_from_number)


_ENV_KEYS: dict[str, str] = {
    "app_env": "APP_ENV",
    "database_url": "DATABASE_URL",
    "cors_origins": "CORS_ORIGINS",
    "version": "APP_VERSION",
    "log_level": "LOG_LEVEL",
    "invite_base_url": "INVITE_BASE_URL",
    "app_download_link": "APP_DOWNLOAD_LINK",
    "sms_provider": "SMS_PROVIDER",
    "twilio_account_sid": "TWILIO_ACCOUNT_SID",
    "twilio_auth_token": "TWILIO_AUTH_TOKEN",
    "twilio_from_number": "TWILIO_FROM_NUMBER",
    "email_provider": "EMAIL_PROVIDER",
    "sendgrid_api_key": "SENDGRID_API_KEY",
    "email_from_address": "EMAIL_FROM_ADDRESS",
    "sms_messages_per_second": "SMS_MESSAGES_PER_SECOND",
    "sms_bucket_capacity": "SMS_BUCKET_CAPACITY",
    "delivery_max_attempts": "DELIVERY_MAX_ATTEMPTS",
    "delivery_backoff_seconds": "DELIVERY_BACKOFF_SECONDS",
    "bulk_worker_limit": "BULK_WORKER_LIMIT",
    "import_max_contacts": "IMPORT_MAX_CONTACTS",
    "sync_max_contacts": "SYNC_MAX_CONTACTS",
    "invitation_bulk_cap": "INVITATION_BULK_CAP",
    "invitation_expiry_days": "INVITATION_EXPIRY_DAYS",
    "resend_window_days": "RESEND_WINDOW_DAYS",
    "rate_limit_enabled": "RATE_LIMIT_ENABLED",
}


def _build_settings() -> Settings:
    raw_values: dict[str, Any] = {field: os.getenv(env) for field, env in _ENV_KEYS.items()}
    filtered_values = {key: value for key, value in raw_values.items() if value is not None}
    return Settings(**filtered_values)


@lru_cache()
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return _build_settings()
