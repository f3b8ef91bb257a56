from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from slot_monitor.config import (  # noqa: E402
    NavigationConfig,
    RetryConfig,
    SchedulerConfig,
    get_settings,
)


@pytest.fixture
def nav_cfg() -> NavigationConfig:
    return NavigationConfig(
        navigation_timeout_ms=1000,
        content_timeout_ms=200,
        selection_timeout_ms=500,
        back_timeout_ms=200,
        step_delay_min=0,
        step_delay_max=0,
        settle_delay=0,
    )


@pytest.fixture
def retry_cfg() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay=2.0)


@pytest.fixture
def scheduler_cfg() -> SchedulerConfig:
    return SchedulerConfig(immediate_check=False, immediate_check_delay=0)


@pytest.fixture
def no_sleep():
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture
def clean_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
