"""
Retry policy with failure classification and browser restarts.

Повторы с линейной задержкой: при падении браузера перезапускаем его
перед следующей попыткой, при сетевых ошибках просто ждём, фатальные
ошибки пробрасываем сразу.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, TypeVar

from .config import RetryConfig, get_settings
from .errors import classify_error
from .models import AttemptRecord, ErrorKind
from .utils import utcnow

logger = logging.getLogger(__name__)


T = TypeVar("T")


class RetryPolicy:
    """Wrap an async operation with classified retries."""

    def __init__(
        self,
        restart: Callable[[], Awaitable[None]],
        cfg: RetryConfig | None = None,
        *,
        classifier: Callable[[BaseException], ErrorKind] = classify_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        history_size: int = 200,
    ) -> None:
        if cfg is None:
            cfg = get_settings().retry
        self._restart = restart
        self._cfg = cfg
        self._classify = classifier
        self._sleep = sleep
        self._history: Deque[AttemptRecord] = deque(maxlen=history_size)
        self.restarts: int = 0

    @property
    def attempts(self) -> List[AttemptRecord]:
        return list(self._history)

    def backoff(self, attempt: int) -> float:
        return attempt * self._cfg.base_delay

    async def wrap(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_attempts: Optional[int] = None,
        label: str = "operation",
    ) -> T:
        """
        Run operation up to max_attempts times.

        After the last attempt the last error propagates to the caller.
        """
        attempts = max_attempts if max_attempts is not None else self._cfg.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
            except Exception as exc:  # noqa: BLE001
                kind = self._classify(exc)
                if kind is ErrorKind.FATAL:
                    self._record(label, attempt, kind, exc, 0.0)
                    logger.error("%s: fatal error on attempt %s: %s", label, attempt, exc)
                    raise
                if attempt >= attempts:
                    self._record(label, attempt, kind, exc, 0.0)
                    logger.error("%s: giving up after %s attempts: %s", label, attempt, exc)
                    raise

                delay = self.backoff(attempt)
                self._record(label, attempt, kind, exc, delay)
                logger.warning(
                    "%s: attempt %s/%s failed (%s): %s; retrying in %.1fs",
                    label,
                    attempt,
                    attempts,
                    kind.value,
                    exc,
                    delay,
                )
                if kind is ErrorKind.BROWSER_FAULT:
                    await self._restart_browser(label)
                await self._sleep(delay)
            else:
                self._record(label, attempt, None, None, 0.0)
                if attempt > 1:
                    logger.info("%s: succeeded on attempt %s", label, attempt)
                return result

    async def _restart_browser(self, label: str) -> None:
        self.restarts += 1
        logger.info("%s: browser restart needed, reinitializing", label)
        try:
            await self._restart()
        except Exception as e:  # noqa: BLE001
            logger.error("%s: browser restart failed: %s", label, e)

    def _record(
        self,
        label: str,
        attempt: int,
        kind: Optional[ErrorKind],
        exc: Optional[BaseException],
        delay: float,
    ) -> None:
        self._history.append(
            AttemptRecord(
                label=label,
                attempt=attempt,
                kind=kind,
                error=str(exc) if exc is not None else None,
                delay=delay,
                at=utcnow(),
            )
        )


__all__ = ["RetryPolicy"]
