"""Configuration settings using Pydantic."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Docs: https://docs.pydantic.dev/2.8/concepts/pydantic_settings/


class Settings(BaseSettings):
    # App name used in logs
    app_name: str = "tgchain"

    # Allows to detect type of deployment
    environment: Literal["dev", "prod"] = "dev"

    # Token got from https://t.me/BotFather
    telegram_bot_token: str

    # Logfire token, logs stay local without it
    logfire_token: str | None = None

    # --- Long polling ---

    # Seconds the Bot API may hold a getUpdates request open
    polling_timeout: int = Field(default=30, ge=0)

    # Max updates per batch, server default (100) if unset
    polling_limit: int | None = Field(default=None, ge=1, le=100)

    # Update kinds to receive, server default if unset
    allowed_updates: list[str] | None = None

    drop_pending_updates: bool = False

    # Seconds to wait after a failed getUpdates call
    polling_error_sleep: float = 3.0

    # --- Retries of setup calls ---

    retry_initial_delay: float = Field(default=0.05, gt=0)
    retry_max_delay: float = Field(default=20 * 60, gt=0)

    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod"),
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from .env
    )

    @property
    def bot_id(self) -> int:
        return int(self.telegram_bot_token.split(":")[0])
