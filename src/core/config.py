"""Configuration management for the leadmarket platform.

All configuration is loaded from environment variables and/or .env file.
Business settings edited by administrators at runtime (pricing, tax rate,
assignment limits) live in the database, see services.settings_store.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root detection
PROJECT_ROOT = Path(__file__).resolve().parents[2]
ENV_FILE = PROJECT_ROOT / ".env"

DATABASE_FILE = PROJECT_ROOT / "leadmarket.db"
ABSOLUTE_DATABASE_URL = f"sqlite:///{DATABASE_FILE.as_posix()}"


def _resolve_database_url(url: str) -> str:
    """
    Convert relative SQLite paths to absolute paths based on PROJECT_ROOT.

    Keeps the app pointed at the same file regardless of the working directory.
    """
    if not url.startswith("sqlite:///"):
        return url

    path_part = url.replace("sqlite:///", "")

    # ":memory:" and absolute paths pass through untouched
    if path_part.startswith("./") or (not path_part.startswith("/") and ":" not in path_part):
        if path_part.startswith("./"):
            path_part = path_part[2:]
        absolute_path = PROJECT_ROOT / path_part
        return f"sqlite:///{absolute_path.as_posix()}"

    return url


class Settings(BaseSettings):
    """
    Runtime configuration powered by environment variables and .env overrides.

    All settings can be configured via:
    1. Environment variables (highest priority)
    2. .env file in project root (loaded automatically)
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------------
    database_url: str = Field(
        default=ABSOLUTE_DATABASE_URL,
        alias="DATABASE_URL",
        description="SQLAlchemy connection string.",
    )
    db_pool_size: int = Field(default=5, alias="DB_POOL_SIZE", ge=1)
    db_max_overflow: int = Field(default=10, alias="DB_MAX_OVERFLOW", ge=0)
    db_pool_timeout: int = Field(default=30, alias="DB_POOL_TIMEOUT", ge=1)

    # -------------------------------------------------------------------------
    # Partner notifications
    # -------------------------------------------------------------------------
    enable_notifications: bool = Field(
        default=False,
        alias="ENABLE_NOTIFICATIONS",
        description="Deliver lead assignment notifications to the webhook",
    )
    notification_webhook_url: Optional[str] = Field(default=None, alias="NOTIFICATION_WEBHOOK_URL")
    notification_timeout_seconds: float = Field(
        default=5.0, alias="NOTIFICATION_TIMEOUT_SECONDS", gt=0
    )

    # -------------------------------------------------------------------------
    # Billing
    # -------------------------------------------------------------------------
    revenue_commission_rate: float = Field(
        default=0.10, alias="REVENUE_COMMISSION_RATE", ge=0.0, le=1.0
    )
    invoice_due_days: int = Field(default=30, alias="INVOICE_DUE_DAYS", ge=0)
    bulk_invoice_lock_seconds: int = Field(default=1800, alias="BULK_INVOICE_LOCK_SECONDS", ge=1)

    # -------------------------------------------------------------------------
    # Assignment scheduling
    # -------------------------------------------------------------------------
    auto_assign_batch_size: int = Field(default=50, alias="AUTO_ASSIGN_BATCH_SIZE", ge=1)
    auto_assign_interval_minutes: int = Field(
        default=5, alias="AUTO_ASSIGN_INTERVAL_MINUTES", ge=1, le=59
    )

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    dry_run: bool = Field(default=True, alias="DRY_RUN")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="text", alias="LOG_FORMAT")  # "text" or "json"
    environment: str = Field(default="local", alias="ENVIRONMENT")
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT", ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Ensure log format is valid."""
        lower = v.lower()
        if lower not in {"text", "json"}:
            raise ValueError("log_format must be 'text' or 'json'")
        return lower

    @model_validator(mode="after")
    def validate_notification_config(self) -> "Settings":
        """Live notifications in production need somewhere to go."""
        if self.environment == "production" and self.is_notification_live():
            if not self.notification_webhook_url:
                raise ValueError("NOTIFICATION_WEBHOOK_URL required for live notifications in production")
        return self

    @model_validator(mode="after")
    def resolve_database_url(self) -> "Settings":
        """Convert relative SQLite paths to absolute paths."""
        self.database_url = _resolve_database_url(self.database_url)
        return self

    # -------------------------------------------------------------------------
    # Helper Methods
    # -------------------------------------------------------------------------

    def is_notification_live(self) -> bool:
        """True when notifications should actually leave the process."""
        return self.enable_notifications and not self.dry_run

    def is_webhook_configured(self) -> bool:
        return bool(self.notification_webhook_url)

    def get_enabled_services(self) -> list[str]:
        """Get list of enabled external services."""
        services = []
        if self.is_notification_live() and self.is_webhook_configured():
            services.append("notification_webhook")
        return services


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once and cached. To reload settings,
    call `get_settings.cache_clear()` first.
    """
    return Settings()


def reload_settings() -> Settings:
    """
    Clear settings cache and reload from environment.

    Useful for testing or after modifying .env file.
    """
    get_settings.cache_clear()
    return get_settings()
