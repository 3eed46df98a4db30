"""Test configuration loading."""
from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from core.config import PROJECT_ROOT, Settings, get_settings, reload_settings


def test_settings_load():
    """Test that settings load correctly."""
    settings = get_settings()

    assert settings.log_level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    assert 0 <= settings.revenue_commission_rate <= 1
    assert settings.invoice_due_days >= 0
    assert settings.auto_assign_batch_size >= 1


def test_settings_dry_run_default():
    """Test that dry_run defaults to True for safety."""
    os.environ.setdefault("DRY_RUN", "true")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.dry_run is True
    assert settings.is_notification_live() is False
    assert settings.get_enabled_services() == []


def test_reload_settings_picks_up_env(monkeypatch):
    monkeypatch.setenv("INVOICE_DUE_DAYS", "14")
    try:
        assert reload_settings().invoice_due_days == 14
    finally:
        monkeypatch.delenv("INVOICE_DUE_DAYS")
        get_settings.cache_clear()


def test_log_level_normalized():
    assert Settings(LOG_LEVEL="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="chatty")


def test_log_format_validated():
    assert Settings(LOG_FORMAT="JSON").log_format == "json"
    with pytest.raises(ValidationError):
        Settings(LOG_FORMAT="xml")


def test_relative_sqlite_path_made_absolute():
    settings = Settings(DATABASE_URL="sqlite:///./data/leads.db")
    assert settings.database_url == f"sqlite:///{(PROJECT_ROOT / 'data' / 'leads.db').as_posix()}"


def test_memory_database_untouched():
    assert Settings(DATABASE_URL="sqlite:///:memory:").database_url == "sqlite:///:memory:"


def test_live_notifications_need_webhook_in_production():
    with pytest.raises(ValidationError):
        Settings(ENVIRONMENT="production", DRY_RUN=False, ENABLE_NOTIFICATIONS=True)

    settings = Settings(
        ENVIRONMENT="production",
        DRY_RUN=False,
        ENABLE_NOTIFICATIONS=True,
        NOTIFICATION_WEBHOOK_URL="https://hooks.example.com/leads",
    )
    assert settings.get_enabled_services() == ["notification_webhook"]


def test_commission_rate_bounds():
    with pytest.raises(ValidationError):
        Settings(REVENUE_COMMISSION_RATE=1.5)
