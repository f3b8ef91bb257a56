import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from slot_monitor.errors import SessionValidationError
from slot_monitor.models import ErrorKind
from slot_monitor.retry import RetryPolicy


class Script:
    """Raises the queued exceptions one by one, then returns the value."""

    def __init__(self, *errors: BaseException, value: object = "ok") -> None:
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class Restarter:
    def __init__(self, error: BaseException | None = None) -> None:
        self.calls = 0
        self.error = error

    async def __call__(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


@pytest.mark.asyncio
async def test_browser_faults_restart_then_succeed(retry_cfg, no_sleep) -> None:
    restart = Restarter()
    policy = RetryPolicy(restart, retry_cfg, sleep=no_sleep)
    op = Script(PlaywrightError("Target closed"), PlaywrightError("Session closed"))

    assert await policy.wrap(op, label="session_a") == "ok"

    assert op.calls == 3
    assert restart.calls == 2
    assert policy.restarts == 2
    assert no_sleep.delays == [2.0, 4.0]
    kinds = [a.kind for a in policy.attempts]
    assert kinds == [ErrorKind.BROWSER_FAULT, ErrorKind.BROWSER_FAULT, None]


@pytest.mark.asyncio
async def test_fatal_error_is_not_retried(retry_cfg, no_sleep) -> None:
    restart = Restarter()
    policy = RetryPolicy(restart, retry_cfg, sleep=no_sleep)
    op = Script(SessionValidationError("no locations"))

    with pytest.raises(SessionValidationError):
        await policy.wrap(op)

    assert op.calls == 1
    assert restart.calls == 0
    assert no_sleep.delays == []
    assert policy.attempts[-1].kind is ErrorKind.FATAL


@pytest.mark.asyncio
async def test_network_errors_exhaust_attempts_without_restart(retry_cfg, no_sleep) -> None:
    restart = Restarter()
    policy = RetryPolicy(restart, retry_cfg, sleep=no_sleep)
    op = Script(*[PlaywrightTimeoutError("Timeout 10000ms exceeded.") for _ in range(3)])

    with pytest.raises(PlaywrightTimeoutError):
        await policy.wrap(op)

    assert op.calls == 3
    assert restart.calls == 0
    assert no_sleep.delays == [2.0, 4.0]
    assert len(policy.attempts) == 3


@pytest.mark.asyncio
async def test_failed_restart_does_not_stop_retries(retry_cfg, no_sleep) -> None:
    restart = Restarter(RuntimeError("chromium missing"))
    policy = RetryPolicy(restart, retry_cfg, sleep=no_sleep)
    op = Script(PlaywrightError("Target closed"))

    assert await policy.wrap(op) == "ok"
    assert restart.calls == 1


@pytest.mark.asyncio
async def test_max_attempts_override(retry_cfg, no_sleep) -> None:
    policy = RetryPolicy(Restarter(), retry_cfg, sleep=no_sleep)
    op = Script(PlaywrightTimeoutError("Timeout"), PlaywrightTimeoutError("Timeout"))

    with pytest.raises(PlaywrightTimeoutError):
        await policy.wrap(op, max_attempts=1)
    assert op.calls == 1

    with pytest.raises(ValueError):
        await policy.wrap(op, max_attempts=0)


def test_backoff_is_linear(retry_cfg) -> None:
    policy = RetryPolicy(Restarter(), retry_cfg)
    assert [policy.backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]
