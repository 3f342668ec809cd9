"""Configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Calendar
    timezone: str = "UTC"  # day boundaries for streaks, nudges and milestones

    # Challenges
    extended_min_days: int = 2
    extended_max_days: int = 30

    # Store
    store_max_retries: int = 5

    # Audit
    data_audit_path: Path = Path("data/audit")

    # Notifications
    telegram_bot_token: str = ""

    # App
    api_key: str = ""
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
