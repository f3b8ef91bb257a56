"""
Config loading via Pydantic v2 and python-dotenv.

Загрузка конфигурации из .env и базовая валидация.
"""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator


BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Явно загружаем переменные окружения из .env, если файл существует
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


class BotConfig(BaseModel):
    token: str
    admin_chat_id: int


class BrowserConfig(BaseModel):
    headless: bool = True
    executable_path: Optional[str] = None
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = Field(default=1366, ge=320)
    viewport_height: int = Field(default=768, ge=240)
    blocked_resource_types: List[str] = Field(
        default_factory=lambda: ["image", "media", "font"],
        description="Типы ресурсов, которые режем на уровне роутинга.",
    )
    health_timeout_ms: int = Field(default=5000, ge=100)


class NavigationConfig(BaseModel):
    navigation_timeout_ms: int = Field(default=10000, ge=100)
    content_timeout_ms: int = Field(default=8000, ge=0)
    selection_timeout_ms: int = Field(default=15000, ge=100)
    back_timeout_ms: int = Field(default=4000, ge=100)
    fallback_office_limit: int = Field(
        default=2,
        ge=0,
        description="Сколько первых офисов брать, если ни один не совпал по имени.",
    )
    office_selector: str = ".QflowObjectItem[data-id]"
    step_delay_min: float = Field(default=0.3, ge=0)
    step_delay_max: float = Field(default=0.5, ge=0)
    settle_delay: float = Field(default=3.0, ge=0)

    @model_validator(mode="after")
    def _check_delays(self) -> "NavigationConfig":
        if self.step_delay_max < self.step_delay_min:
            raise ValueError("step_delay_max must be >= step_delay_min")
        return self


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)


class SchedulerConfig(BaseModel):
    check_interval: int = Field(default=5, ge=1, description="Минуты, в рабочие часы.")
    off_hours_interval: int = Field(default=30, ge=1, description="Минуты, вне рабочих часов.")
    business_hours_start: int = Field(default=9, ge=0, le=23)
    business_hours_end: int = Field(default=17, ge=1, le=24)
    business_days: List[int] = Field(
        default_factory=lambda: [1, 2, 3, 4, 5],
        description="Дни недели (1=Mon..7=Sun), считающиеся рабочими.",
    )
    timezone: Optional[str] = None
    check_interval_variation: int = Field(default=0, ge=0)
    immediate_check: bool = True
    immediate_check_delay: float = Field(default=2.0, ge=0)

    @model_validator(mode="after")
    def _check_hours(self) -> "SchedulerConfig":
        if self.business_hours_end <= self.business_hours_start:
            raise ValueError("business hours end must be after start")
        return self


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    bot: BotConfig
    browser: BrowserConfig = BrowserConfig()
    navigation: NavigationConfig = NavigationConfig()
    retry: RetryConfig = RetryConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    logging: LoggingConfig = LoggingConfig()


def _split_list(value: str | None) -> Optional[List[str]]:
    if not value:
        return None
    return [x.strip() for x in value.split(",") if x.strip()]


def _split_int_list(value: str | None) -> Optional[List[int]]:
    items = _split_list(value)
    if items is None:
        return None
    return [int(x) for x in items]


def _flag(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes")


def _hours(value: str | None) -> tuple[int, int]:
    # "9-17" -> (9, 17)
    if not value:
        return 9, 17
    start, _, end = value.partition("-")
    return int(start.strip()), int(end.strip())


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if .env is incomplete or invalid.
    """
    env = os.environ

    bot = BotConfig(
        token=env.get("BOT_TOKEN", ""),
        admin_chat_id=int(env.get("ADMIN_CHAT_ID", "0") or "0"),
    )
    browser = BrowserConfig(
        headless=_flag(env.get("BROWSER_HEADLESS"), True),
        executable_path=env.get("BROWSER_EXECUTABLE_PATH", "").strip() or None,
        user_agent=env.get("BROWSER_USER_AGENT", "").strip() or DEFAULT_USER_AGENT,
        blocked_resource_types=_split_list(env.get("BLOCKED_RESOURCE_TYPES"))
        or ["image", "media", "font"],
        health_timeout_ms=int(env.get("HEALTH_TIMEOUT_MS", "5000")),
    )
    navigation = NavigationConfig(
        navigation_timeout_ms=int(env.get("NAVIGATION_TIMEOUT_MS", "10000")),
        content_timeout_ms=int(env.get("CONTENT_TIMEOUT_MS", "8000")),
        selection_timeout_ms=int(env.get("SELECTION_TIMEOUT_MS", "15000")),
        back_timeout_ms=int(env.get("BACK_TIMEOUT_MS", "4000")),
        fallback_office_limit=int(env.get("FALLBACK_OFFICE_LIMIT", "2")),
        office_selector=env.get("OFFICE_SELECTOR", "").strip() or ".QflowObjectItem[data-id]",
        step_delay_min=float(env.get("STEP_DELAY_MIN", "0.3")),
        step_delay_max=float(env.get("STEP_DELAY_MAX", "0.5")),
    )
    retry = RetryConfig(
        max_attempts=int(env.get("RETRY_MAX_ATTEMPTS", "3")),
        base_delay=float(env.get("RETRY_BASE_DELAY", "2")),
    )
    hours_start, hours_end = _hours(env.get("BUSINESS_HOURS"))
    scheduler = SchedulerConfig(
        check_interval=int(env.get("CHECK_INTERVAL", "5")),
        off_hours_interval=int(env.get("OFF_HOURS_INTERVAL", "30")),
        business_hours_start=hours_start,
        business_hours_end=hours_end,
        business_days=_split_int_list(env.get("BUSINESS_DAYS")) or [1, 2, 3, 4, 5],
        timezone=env.get("SCHEDULE_TIMEZONE", "").strip() or None,
        check_interval_variation=int(env.get("CHECK_INTERVAL_VARIATION", "0")),
        immediate_check_delay=float(env.get("IMMEDIATE_CHECK_DELAY", "2")),
    )
    logging_cfg = LoggingConfig(log_level=env.get("LOG_LEVEL", "INFO"))
    return Settings(
        bot=bot,
        browser=browser,
        navigation=navigation,
        retry=retry,
        scheduler=scheduler,
        logging=logging_cfg,
    )


__all__ = [
    "BotConfig",
    "BrowserConfig",
    "NavigationConfig",
    "RetryConfig",
    "SchedulerConfig",
    "LoggingConfig",
    "Settings",
    "get_settings",
    "BASE_DIR",
]
