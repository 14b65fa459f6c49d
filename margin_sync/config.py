"""
Configuration management.
Simple .env based config, one process per deployment.
"""

from decimal import Decimal
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 8081

    # Database
    database_path: str = "./data/margin_sync.db"

    # Shopify
    shopify_api_version: str = "2025-10"
    page_size: int = 250  # Shopify REST maximum

    # Scheduler
    scheduler_enabled: bool = True
    worker_count: int = 4
    cron_poll_seconds: float = 30.0
    fetch_timeout_seconds: float = 60.0
    run_timeout_seconds: float = 1800.0
    max_fetch_attempts: int = 5

    # Margins
    # Fixed conversion rates for convert mode, e.g. EXCHANGE_RATES={"EUR/USD": "1.08"}
    exchange_rates: Dict[str, Decimal] = {}

    # Events
    redis_url: str = ""  # empty keeps events in-process
    events_topic: str = "margin-sync.events"
    publish_max_attempts: int = 5
    publish_backoff_seconds: float = 0.5
    publish_sweep_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"


# Global settings instance
settings = Settings()
