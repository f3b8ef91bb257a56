"""
Utility helpers: logging setup, clock and delays.

Логирование (файл с ротацией + консоль), время в UTC и паузы между шагами.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from .config import LoggingConfig, get_settings


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILENAME = "slot_monitor.log"

# Сторонние логгеры, которые на INFO слишком болтливы
NOISY_LOGGERS = ("aiogram.event", "asyncio")


def setup_logging(logging_cfg: LoggingConfig | None = None) -> None:
    """
    Route all loggers to a rotating file and the console.

    Повторный вызов заменяет обработчики, а не дублирует их.
    """
    cfg = logging_cfg or get_settings().logging
    cfg.logs_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: list[logging.Handler] = [
        RotatingFileHandler(
            cfg.logs_dir / LOG_FILENAME,
            maxBytes=cfg.max_bytes,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        ),
        logging.StreamHandler(),
    ]

    root = logging.getLogger()
    root.setLevel(cfg.log_level.upper())
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def jitter_delay(base_seconds: float, variation_seconds: float) -> float:
    """
    Spread the next check by +/- variation_seconds, never below one second.
    """
    if variation_seconds <= 0:
        return float(base_seconds)
    return max(1.0, base_seconds + random.uniform(-variation_seconds, variation_seconds))


async def human_delay(min_delay: float, max_delay: float) -> None:
    """Random pause between page actions."""
    await asyncio.sleep(random.uniform(min_delay, max_delay))


__all__ = ["setup_logging", "utcnow", "jitter_delay", "human_delay"]
