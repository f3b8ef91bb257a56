import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from slot_monitor.errors import (
    BrowserUnavailable,
    NavigationError,
    SessionValidationError,
    classify_error,
)
from slot_monitor.models import ErrorKind


@pytest.mark.parametrize(
    "exc",
    [
        PlaywrightError("Target closed"),
        PlaywrightError("Protocol error (Page.navigate): Session closed."),
        PlaywrightError("Target page, context or browser has been closed"),
        PlaywrightTimeoutError("Target.createTarget timed out"),
        BrowserUnavailable("Browser not initialised"),
        RuntimeError("Page crashed"),
    ],
)
def test_browser_faults(exc: BaseException) -> None:
    assert classify_error(exc) is ErrorKind.BROWSER_FAULT


@pytest.mark.parametrize(
    "exc",
    [
        PlaywrightTimeoutError("Timeout 10000ms exceeded."),
        PlaywrightError("net::ERR_CONNECTION_RESET at https://example.com"),
        PlaywrightError("Element is not attached to the DOM"),
        NavigationError("HTTP 503 while loading https://example.com"),
        asyncio.TimeoutError(),
        ConnectionResetError("connection reset by peer"),
    ],
)
def test_network_errors(exc: BaseException) -> None:
    assert classify_error(exc) is ErrorKind.NETWORK


@pytest.mark.parametrize(
    "exc",
    [
        SessionValidationError("at least one location is required"),
        KeyError("data-id"),
        ValueError("bad input"),
    ],
)
def test_fatal_errors(exc: BaseException) -> None:
    assert classify_error(exc) is ErrorKind.FATAL
