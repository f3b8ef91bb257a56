"""
Exceptions and failure classification.

Классификация ошибок: по типу исключения и по тексту сообщения
решаем, нужен ли перезапуск браузера, простой повтор или сразу отказ.
"""

from __future__ import annotations

import asyncio

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .models import ErrorKind


class MonitorError(Exception):
    """Base class for monitor errors."""


class BrowserUnavailable(MonitorError):
    """Raised when the browser process is not running or failed to launch."""


class NavigationError(MonitorError):
    """Raised when a page could not be loaded (HTTP error, no response)."""


class SessionValidationError(MonitorError, ValueError):
    """Raised when a monitoring session request is incomplete."""


# Сообщения Playwright/CDP, после которых текущий браузер уже не пригоден
BROWSER_FAULT_MARKERS = (
    "target closed",
    "target page, context or browser has been closed",
    "protocol error",
    "session closed",
    "target.createtarget timed out",
    "browser has been closed",
    "browser has disconnected",
    "execution context was destroyed",
    "page crashed",
    "crashed",
)

NETWORK_MARKERS = (
    "net::err_",
    "navigation failed",
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
)


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a caught exception to ErrorKind."""
    if isinstance(exc, BrowserUnavailable):
        return ErrorKind.BROWSER_FAULT
    if isinstance(exc, SessionValidationError):
        return ErrorKind.FATAL

    text = str(exc).lower()
    if any(marker in text for marker in BROWSER_FAULT_MARKERS):
        return ErrorKind.BROWSER_FAULT

    if isinstance(
        exc,
        (PlaywrightTimeoutError, asyncio.TimeoutError, NavigationError, ConnectionError),
    ):
        return ErrorKind.NETWORK
    if any(marker in text for marker in NETWORK_MARKERS):
        return ErrorKind.NETWORK
    # Прочие ошибки драйвера (элемент отцепился от DOM и т.п.) лечатся повтором
    if isinstance(exc, PlaywrightError):
        return ErrorKind.NETWORK

    return ErrorKind.FATAL


__all__ = [
    "MonitorError",
    "BrowserUnavailable",
    "NavigationError",
    "SessionValidationError",
    "classify_error",
]
