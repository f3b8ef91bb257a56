"""
Session registry and periodic monitoring cycles.

Планировщик:
- реестр сессий мониторинга (SessionStore), без глобального состояния
- циклические проверки с интервалом, зависящим от рабочих часов
- немедленная проверка сразу после старта новой сессии
- ошибки изолированы по сессиям, прошлый результат не затирается
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from .browser import BrowserController
from .config import SchedulerConfig, get_settings
from .errors import SessionValidationError
from .models import (
    AppointmentSlot,
    BrowserHealth,
    CycleReport,
    HealthStatus,
    MonitoringSession,
    SessionPreferences,
    SessionStatus,
)
from .retry import RetryPolicy
from .utils import jitter_delay, utcnow

logger = logging.getLogger(__name__)


ResultsCallback = Callable[[MonitoringSession, List[AppointmentSlot]], Awaitable[None]]
IntervalPolicy = Callable[[datetime], float]


class SessionProcessor(Protocol):
    async def process(self, session: MonitoringSession) -> List[AppointmentSlot]: ...


class BusinessHoursInterval:
    """Shorter polling interval on business days within business hours."""

    def __init__(self, cfg: SchedulerConfig) -> None:
        self._cfg = cfg
        self._tz = ZoneInfo(cfg.timezone) if cfg.timezone else None

    def is_business_time(self, now: datetime) -> bool:
        local = now.astimezone(self._tz) if self._tz else now.astimezone()
        return (
            local.isoweekday() in self._cfg.business_days
            and self._cfg.business_hours_start <= local.hour < self._cfg.business_hours_end
        )

    def __call__(self, now: datetime) -> float:
        minutes = (
            self._cfg.check_interval if self.is_business_time(now) else self._cfg.off_hours_interval
        )
        return minutes * 60.0


class SessionStore:
    """Registry of monitoring sessions keyed by session id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, MonitoringSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def add(self, session: MonitoringSession) -> None:
        if session.session_id in self._sessions:
            raise KeyError(f"session {session.session_id} already registered")
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Optional[MonitoringSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def clear(self) -> int:
        count = len(self._sessions)
        self._sessions.clear()
        return count

    def snapshot(self) -> List[MonitoringSession]:
        return list(self._sessions.values())

    def is_current(self, session: MonitoringSession) -> bool:
        """True if this exact session object is still registered."""
        return self._sessions.get(session.session_id) is session


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:12]}"


class SessionScheduler:
    """Runs monitoring cycles over registered sessions."""

    def __init__(
        self,
        engine: SessionProcessor,
        retry: RetryPolicy,
        browser: BrowserController,
        cfg: SchedulerConfig | None = None,
        *,
        store: SessionStore | None = None,
        interval: IntervalPolicy | None = None,
        on_results: ResultsCallback | None = None,
    ) -> None:
        if cfg is None:
            cfg = get_settings().scheduler
        self._engine = engine
        self._retry = retry
        self._browser = browser
        self._cfg = cfg
        self.store = store if store is not None else SessionStore()
        self._interval = interval or BusinessHoursInterval(cfg)
        self._on_results = on_results
        # Единственный владелец браузера: циклы и внеочередные проверки не пересекаются
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[None]] = set()
        self.cycles_count = 0
        self.last_cycle: Optional[CycleReport] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # region sessions
    async def start_session(
        self,
        target_url: str,
        location_names: Iterable[str],
        preferences: SessionPreferences | None = None,
    ) -> str:
        """Validate, replace any registered sessions and register a new one."""
        url = (target_url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise SessionValidationError("target URL must be an http(s) URL")
        names = [name.strip() for name in location_names if name and name.strip()]
        if not names:
            raise SessionValidationError("at least one location is required")

        session = MonitoringSession(
            session_id=new_session_id(),
            target_url=url,
            location_names=names,
            preferences=preferences or SessionPreferences(),
            started_at=utcnow(),
        )
        # Одновременно активен один владелец сессий: старые убираем
        cleared = self.store.clear()
        if cleared:
            logger.info("Cleared %s old sessions before starting %s", cleared, session.session_id)
        self.store.add(session)
        logger.info("Started monitoring session %s for %s locations", session.session_id, len(names))

        if self._cfg.immediate_check:
            task = asyncio.create_task(
                self._run_immediate(session.session_id),
                name=f"immediate-check-{session.session_id}",
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return session.session_id

    def stop_session(self, session_id: str | None = None) -> int:
        """Remove one session, or all of them when no id is given."""
        if session_id is None:
            count = self.store.clear()
            logger.info("Stopped all %s monitoring sessions", count)
            return count
        if self.store.remove(session_id):
            logger.info("Stopped monitoring session %s", session_id)
            return 1
        logger.info("Session %s is not registered", session_id)
        return 0

    def status(self) -> List[SessionStatus]:
        return [SessionStatus.from_session(s) for s in self.store.snapshot()]

    async def health(self) -> HealthStatus:
        """
        Browser health plus active session count.

        Пока цикл держит браузер, заново его не проверяем: отдаём последний замер.
        """
        if self._cycle_lock.locked():
            browser = self._browser.last_health or BrowserHealth(
                browser_ok=self._browser.is_running,
                error=None if self._browser.is_running else "browser is not running",
            )
        else:
            async with self._cycle_lock:
                browser = await self._browser.health_check()
        return HealthStatus(
            status="healthy" if browser.browser_ok else "unhealthy",
            browser_ok=browser.browser_ok,
            active_sessions=len(self.store),
            last_latency_ms=browser.latency_ms,
            error=browser.error,
            checked_at=utcnow(),
        )

    # endregion

    # region cycles
    async def run_cycle(self) -> CycleReport:
        """Process every registered session once, strictly one after another."""
        async with self._cycle_lock:
            self.cycles_count += 1
            report = CycleReport(started_at=utcnow())
            sessions = self.store.snapshot()
            logger.info("Monitoring cycle #%s: %s active sessions", self.cycles_count, len(sessions))

            for session in sessions:
                if not self.store.is_current(session):
                    continue
                report.processed += 1
                if await self._process_session(session):
                    report.succeeded += 1
                else:
                    report.failed += 1

            report.finished_at = utcnow()
            self.last_cycle = report
            logger.info(
                "Cycle #%s done: %s processed, %s ok, %s failed",
                self.cycles_count,
                report.processed,
                report.succeeded,
                report.failed,
            )
            return report

    async def _run_immediate(self, session_id: str) -> None:
        await asyncio.sleep(self._cfg.immediate_check_delay)
        async with self._cycle_lock:
            session = self.store.get(session_id)
            if session is None:
                return
            logger.info("Running immediate check for %s", session_id)
            await self._process_session(session)

    async def _process_session(self, session: MonitoringSession) -> bool:
        """Check one session; failures are recorded on the session, never raised."""
        sid = session.session_id
        try:
            slots = await self._retry.wrap(lambda: self._engine.process(session), label=sid)
        except Exception as e:  # noqa: BLE001
            if not self.store.is_current(session):
                logger.info("Session %s was stopped during check, discarding failure", sid)
                return False
            session.last_checked_at = utcnow()
            session.checks_count += 1
            session.last_error = f"{type(e).__name__}: {e}"
            session.consecutive_failures += 1
            logger.error(
                "Session %s failed (%s in a row), keeping %s previous slots: %s",
                sid,
                session.consecutive_failures,
                len(session.last_result),
                e,
            )
            return False

        if not self.store.is_current(session):
            logger.info("Session %s was stopped during check, discarding result", sid)
            return False

        now = utcnow()
        session.last_result = list(slots)
        session.last_checked_at = now
        session.last_success_at = now
        session.last_error = None
        session.consecutive_failures = 0
        session.checks_count += 1
        logger.info("Session %s: %s slots found", sid, len(slots))

        if self._on_results is not None:
            try:
                await self._on_results(session, list(slots))
            except Exception as e:  # noqa: BLE001
                logger.warning("Results consumer failed for %s: %s", sid, e)
        return True

    # endregion

    # region loop
    async def start(self) -> None:
        if self.is_running:
            logger.info("Scheduler already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="slot-monitor-scheduler")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=30)
            except asyncio.TimeoutError:
                logger.warning("Scheduler task did not stop within timeout")
            self._task = None
        for task in list(self._background):
            task.cancel()
        await self.drain()

    async def drain(self) -> None:
        """Wait for pending immediate checks."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run_loop(self) -> None:
        logger.info("Scheduler loop started")
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception as e:  # noqa: BLE001
                logger.exception("Unexpected error in monitoring cycle: %s", e)

            delay = jitter_delay(self._interval(utcnow()), self._cfg.check_interval_variation)
            logger.info("Next cycle in %.0f seconds", delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler loop stopped")

    # endregion


__all__ = [
    "SessionStore",
    "SessionScheduler",
    "BusinessHoursInterval",
    "IntervalPolicy",
    "ResultsCallback",
    "new_session_id",
]
