import datetime as dt
import logging

import pytest
from pydantic import ValidationError

from slot_monitor.config import LoggingConfig, NavigationConfig, SchedulerConfig, get_settings
from slot_monitor.scheduler import BusinessHoursInterval
from slot_monitor.utils import LOG_FILENAME, jitter_delay, setup_logging


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, clean_settings) -> None:
    monkeypatch.setenv("BOT_TOKEN", "123:abc")
    monkeypatch.setenv("ADMIN_CHAT_ID", "42")
    monkeypatch.setenv("BROWSER_HEADLESS", "0")
    monkeypatch.setenv("BLOCKED_RESOURCE_TYPES", "image, font")
    monkeypatch.setenv("FALLBACK_OFFICE_LIMIT", "3")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("BUSINESS_HOURS", "8-18")
    monkeypatch.setenv("BUSINESS_DAYS", "1,2,3")

    settings = get_settings()

    assert settings.bot.token == "123:abc"
    assert settings.bot.admin_chat_id == 42
    assert settings.browser.headless is False
    assert settings.browser.blocked_resource_types == ["image", "font"]
    assert settings.navigation.fallback_office_limit == 3
    assert settings.retry.max_attempts == 5
    assert (settings.scheduler.business_hours_start, settings.scheduler.business_hours_end) == (8, 18)
    assert settings.scheduler.business_days == [1, 2, 3]
    assert get_settings() is settings


def test_defaults(monkeypatch: pytest.MonkeyPatch, clean_settings) -> None:
    for name in ("FALLBACK_OFFICE_LIMIT", "RETRY_MAX_ATTEMPTS", "RETRY_BASE_DELAY", "CHECK_INTERVAL"):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.navigation.fallback_office_limit == 2
    assert settings.navigation.office_selector == ".QflowObjectItem[data-id]"
    assert settings.retry.max_attempts == 3
    assert settings.retry.base_delay == 2.0
    assert settings.scheduler.check_interval == 5


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        SchedulerConfig(business_hours_start=17, business_hours_end=9)
    with pytest.raises(ValidationError):
        NavigationConfig(step_delay_min=1.0, step_delay_max=0.5)


@pytest.mark.parametrize(
    "moment, seconds",
    [
        (dt.datetime(2025, 8, 11, 10, 0), 5 * 60),  # понедельник, рабочее время
        (dt.datetime(2025, 8, 11, 17, 30), 30 * 60),  # после закрытия
        (dt.datetime(2025, 8, 11, 8, 59), 30 * 60),
        (dt.datetime(2025, 8, 16, 11, 0), 30 * 60),  # суббота
    ],
)
def test_business_hours_interval(moment: dt.datetime, seconds: float) -> None:
    interval = BusinessHoursInterval(SchedulerConfig())
    assert interval(moment) == seconds


def test_jitter_delay_bounds() -> None:
    assert jitter_delay(300, 0) == 300.0
    for _ in range(20):
        assert 240 <= jitter_delay(300, 60) <= 360


def test_setup_logging_writes_rotating_file(tmp_path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        setup_logging(LoggingConfig(logs_dir=tmp_path / "logs", log_level="debug"))
        setup_logging(LoggingConfig(logs_dir=tmp_path / "logs", log_level="debug"))
        logging.getLogger("slot_monitor.test").info("hello")
        for handler in root.handlers:
            handler.flush()

        assert len(root.handlers) == 2
        assert root.level == logging.DEBUG
        assert "hello" in (tmp_path / "logs" / LOG_FILENAME).read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
