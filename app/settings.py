from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(default=Path("data/beacon.db"), validation_alias="DB_PATH")

    user_agent: str = Field(
        default="beacon-alerts/0.1 (+https://thebeacon.in)",
        validation_alias="USER_AGENT",
    )

    scrape_enabled: bool = Field(default=True, validation_alias="SCRAPE_ENABLED")
    scrape_interval_seconds: int = Field(
        default=1800, validation_alias="SCRAPE_INTERVAL_SECONDS"
    )
    scrape_initial_delay_seconds: int = Field(
        default=60, validation_alias="SCRAPE_INITIAL_DELAY_SECONDS"
    )
    source_timeout_seconds: float = Field(
        default=15.0, validation_alias="SOURCE_TIMEOUT_SECONDS"
    )
    search_deadline_seconds: float = Field(
        default=20.0, validation_alias="SEARCH_DEADLINE_SECONDS"
    )
    sources_file: Path | None = Field(default=None, validation_alias="SOURCES_FILE")

    notify_concurrency: int = Field(default=8, validation_alias="NOTIFY_CONCURRENCY")
    notify_timeout_seconds: float = Field(
        default=10.0, validation_alias="NOTIFY_TIMEOUT_SECONDS"
    )
    push_ttl_seconds: int = Field(default=3600, validation_alias="PUSH_TTL_SECONDS")

    admin_token: str | None = Field(default=None, validation_alias="ADMIN_TOKEN")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")
    service_name: str = Field(default="beacon-alerts", validation_alias="SERVICE_NAME")
