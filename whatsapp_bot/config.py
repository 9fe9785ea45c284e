from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage - "sqlite://" keeps everything in memory
    DATABASE_URL: str = "sqlite://"

    LOG_LEVEL: str = "INFO"

    # Webhook verification (GET hub.verify_token) and payload signing
    WHATSAPP_VERIFY_TOKEN: str = "your_verify_token_here"
    WHATSAPP_APP_SECRET: Optional[str] = None

    # Outbound sender identity, only used for log lines by the stub notifier
    WHATSAPP_TOKEN: str = "your_whatsapp_token_here"
    WHATSAPP_PHONE_NUMBER_ID: Optional[str] = None

    WEBHOOK_LOG_LIMIT: int = 100
    ACTIVE_USER_WINDOW_HOURS: int = 24


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
