"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup.

    Model credentials are not here: the admin-level AI configuration is read
    from the database on every turn.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_path: Path = Field(default=Path("imobot.db"), alias="DATABASE_PATH")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")
    aggregation_delay_seconds: float = Field(default=15.0, alias="AGGREGATION_DELAY_SECONDS")
    history_window_messages: int = Field(default=50, alias="HISTORY_WINDOW_MESSAGES")
    search_page_size: int = Field(default=3, alias="SEARCH_PAGE_SIZE")
    followup_max_tokens: int = Field(default=100, alias="FOLLOWUP_MAX_TOKENS")
    evolution_api_url: str = Field(default="", alias="EVOLUTION_API_URL")
    evolution_api_token: str = Field(default="", alias="EVOLUTION_API_TOKEN")
    timezone: str = Field(default="America/Sao_Paulo", alias="TIMEZONE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()
