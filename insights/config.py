"""Service configuration, read from the environment (prefix ``INSIGHTS_``)."""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Language model
    model_backend: Literal["live", "mock"] = "mock"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    assistant_model: str = "gpt-4o"
    model_timeout_seconds: float = Field(default=30.0, gt=0)

    # Extraction windows
    max_context_messages: int = 100
    parse_context_messages: int = 5
    min_message_length: int = 10
    min_days_back: int = 1
    max_days_back: int = 14

    # Rate limits
    daily_message_limit: int = 1000
    request_limit: int = 30
    request_window_minutes: int = 60

    # Conflicts
    conflict_horizon_days: int = 30
    default_event_minutes: int = 60

    # Calendar sync
    calendar_backend: Literal["memory", "google"] = "memory"
    google_credentials_file: str = "token.json"
    calendar_timeout_seconds: float = Field(default=15.0, gt=0)
    sync_max_attempts: int = 5
    sync_backoff_seconds: int = 60
    sync_max_backoff_seconds: int = 3600

    log_level: str = "INFO"
    seed_demo_data: bool = False

    model_config = SettingsConfigDict(
        env_prefix="INSIGHTS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
