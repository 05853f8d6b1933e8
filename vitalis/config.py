"""Environment settings for the Vitalis agent."""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Overrides loaded from ``VITALIS_*`` environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="VITALIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ingestion endpoint
    server_url: Optional[str] = None
    machine_token: Optional[str] = None

    # Logging
    log_level: Optional[str] = None
    log_file: Optional[Path] = None

    # Config file location
    config_path: Optional[Path] = None


def get_settings() -> Settings:
    """Read settings from the current environment."""
    return Settings()
