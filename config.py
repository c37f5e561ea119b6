"""
Application settings.

Loads configuration from environment variables (prefix WALLET_) using
pydantic-settings.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    storage_backend: Literal["postgres", "memory"] = "postgres"
    database_url: str = "dbname=wallet user=wallet password=secret host=localhost port=5432"
    lock_timeout_ms: int = Field(5000, ge=0)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # API
    app_title: str = "Referral Wallet"
    cors_origins: List[str] = ["*"]
    recent_transactions_limit: int = Field(10, ge=1)
    topup_history_limit: int = Field(4, ge=1)
    max_page_size: int = Field(100, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
