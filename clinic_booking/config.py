# clinic_booking/config.py

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables / .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Redis (guard counters, bootstrap config) =====
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=2.0)

    # ===== Clinic =====
    clinic_id: str = Field(default="default", description="Clinic served by this instance")

    # ===== Remote store =====
    store_url: str = Field(
        default="http://localhost:54321/rest/v1",
        description="PostgREST-style base URL of the remote store",
    )
    store_api_key: str = Field(default="")
    store_timeout: float = Field(default=10.0)

    # ===== Cache =====
    appointments_ttl_seconds: float = Field(default=300.0)
    settings_ttl_seconds: float = Field(default=600.0)
    cache_max_entries: int = Field(default=500)

    # ===== Realtime =====
    invalidate_debounce_ms: int = Field(default=2000)
    notify_debounce_ms: int = Field(default=1000)

    # ===== Abuse guard =====
    max_failed_logins: int = Field(default=5)
    max_appointments_per_ip: int = Field(default=10)
    max_appointments_per_email: int = Field(default=5)
    max_appointments_per_phone: int = Field(default=3)
    tracking_window_seconds: int = Field(default=24 * 60 * 60)
    captcha_cooldown_seconds: int = Field(default=30 * 60)
    blacklist_seconds: int = Field(default=24 * 60 * 60)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
