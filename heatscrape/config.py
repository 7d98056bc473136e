"""
Application settings loaded from environment variables.

Every setting can be overridden with a ``HEATSCRAPE_`` prefixed variable or
from a ``.env`` file in the working directory:

    HEATSCRAPE_SHADOW_MODE=false
    HEATSCRAPE_WINDOW_TIMEZONE=America/New_York
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Scraper and scheduler settings."""

    model_config = SettingsConfigDict(
        env_prefix="HEATSCRAPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    db_path: Path = Field(default=PROJECT_ROOT / "output" / "prices.db")
    scrape_config_path: Path = Field(default=PROJECT_ROOT / "data" / "scrape-config.json")

    # Daily scraping window, in hours of the window timezone
    window_start_hour: int = Field(default=8, ge=0, le=23)
    window_end_hour: int = Field(default=18, ge=1, le=24)
    # Fixed UTC-5 by default (no DST); set an IANA zone to follow DST
    window_timezone: str = Field(default="Etc/GMT+5")
    jitter_minutes: int = Field(default=15, ge=0)

    # Scheduler
    shadow_mode: bool = Field(default=True)
    shadow_observation_days: int = Field(default=7, ge=0)
    check_interval_seconds: float = Field(default=60.0, gt=0)

    # Fetching
    fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=3.0, ge=0)
    batch_delay_seconds: float = Field(default=2.0, ge=0)
    user_agent: str = Field(default="HomeHeatBot/1.0 (gethomeheat.com; published-price-aggregation)")

    # Admin notification
    smtp_host: str = Field(default="smtp.gmail.com")
    smtp_port: int = Field(default=587)
    smtp_user: str | None = Field(default=None)
    smtp_password: str | None = Field(default=None)
    admin_email: str | None = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")

    @field_validator("window_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @model_validator(mode="after")
    def _check_window(self) -> Settings:
        if self.window_end_hour <= self.window_start_hour:
            raise ValueError("window_end_hour must be after window_start_hour")
        if self.jitter_minutes * 2 >= self.window_minutes:
            raise ValueError("jitter_minutes is too large for the scraping window")
        return self

    @property
    def window_minutes(self) -> int:
        return (self.window_end_hour - self.window_start_hour) * 60

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.window_timezone)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
