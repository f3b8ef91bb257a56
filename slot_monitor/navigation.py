"""
Navigation through the multi-step booking flow.

Машина состояний одного прохода:
ENTRY -> OFFICE_LIST -> OFFICE_SELECTED -> SLOTS_EXTRACTED -> (следующий офис | DONE)
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Iterable, List, Sequence

from .browser import BrowserController
from .config import NavigationConfig, get_settings
from .driver import PageDriver, wait_for_condition
from .errors import classify_error
from .extraction import ExtractionAdapter, ExtractionResult, dedupe_slots
from .models import AppointmentSlot, ErrorKind, MonitoringSession, OfficeCandidate
from .utils import human_delay, utcnow

logger = logging.getLogger(__name__)


class NavState(str, Enum):
    ENTRY = "ENTRY"
    OFFICE_LIST = "OFFICE_LIST"
    OFFICE_SELECTED = "OFFICE_SELECTED"
    SLOTS_EXTRACTED = "SLOTS_EXTRACTED"
    DONE = "DONE"


def match_offices(
    candidates: Sequence[OfficeCandidate],
    requested_names: Iterable[str],
    fallback_limit: int = 2,
) -> List[OfficeCandidate]:
    """
    Case-insensitive bidirectional substring match, in candidate order.

    Если ничего не совпало, берём первые fallback_limit офисов.
    """
    wanted = [name.strip().lower() for name in requested_names if name and name.strip()]
    matched = [
        office
        for office in candidates
        if any(
            w in office.display_name.lower() or office.display_name.lower() in w
            for w in wanted
        )
    ]
    if matched or not candidates:
        return matched

    fallback = list(candidates[:fallback_limit])
    logger.warning(
        "No offices matched %s, falling back to first %s: %s",
        wanted,
        len(fallback),
        ", ".join(o.display_name for o in fallback),
    )
    return fallback


class NavigationEngine:
    """Drives one leased page through the booking flow for a session."""

    def __init__(
        self,
        browser: BrowserController,
        cfg: NavigationConfig | None = None,
        adapter: ExtractionAdapter | None = None,
    ) -> None:
        if cfg is None:
            cfg = get_settings().navigation
        self._browser = browser
        self._cfg = cfg
        self._adapter = adapter or ExtractionAdapter()

    async def process(self, session: MonitoringSession) -> List[AppointmentSlot]:
        """Lease a page and run one pass for the session."""
        async with self._browser.lease_page() as page:
            return await self.run_pass(page, session)

    async def run_pass(self, page: PageDriver, session: MonitoringSession) -> List[AppointmentSlot]:
        started = time.monotonic()
        url = session.target_url

        self._transition(session, NavState.ENTRY)
        candidates = await self.enter_flow(page, url)
        self._transition(session, NavState.OFFICE_LIST)

        offices = match_offices(candidates, session.location_names, self._cfg.fallback_office_limit)
        if not offices:
            logger.info("[%s] No offices discovered on %s", session.session_id, url)
            self._transition(session, NavState.DONE)
            return []
        logger.info(
            "[%s] Processing %s offices: %s",
            session.session_id,
            len(offices),
            ", ".join(o.display_name for o in offices),
        )

        slots: List[AppointmentSlot] = []
        for index, office in enumerate(offices):
            try:
                if not await self.select_office(page, office):
                    continue
                self._transition(session, NavState.OFFICE_SELECTED)
                result = await self.extract_slots(page, office)
                self._transition(session, NavState.SLOTS_EXTRACTED)
                slots.extend(result.slots)
            except Exception as e:  # noqa: BLE001
                if classify_error(e) is not ErrorKind.NETWORK:
                    raise
                logger.warning("[%s] Error processing %s: %s", session.session_id, office.display_name, e)
                # Восстанавливаемся с чистой загрузки и идём к следующему офису
                await self.enter_flow(page, url)
                continue

            if index < len(offices) - 1:
                await self.return_to_office_list(page, url)

        self._transition(session, NavState.DONE)
        unique = dedupe_slots(slots)
        filtered = session.preferences.apply(unique)
        logger.info(
            "[%s] Pass finished: %s slots (%s after preferences) in %.1fs",
            session.session_id,
            len(unique),
            len(filtered),
            time.monotonic() - started,
        )
        return filtered

    def _transition(self, session: MonitoringSession, state: NavState) -> None:
        logger.debug("[%s] -> %s", session.session_id, state.value)

    async def enter_flow(self, page: PageDriver, url: str) -> List[OfficeCandidate]:
        """Load the entry URL and discover office candidates."""
        logger.info("Loading booking page %s", url[:80])
        await page.goto(url, timeout_ms=self._cfg.navigation_timeout_ms)
        await page.wait_until_ready(timeout_ms=self._cfg.navigation_timeout_ms)

        selector = self._cfg.office_selector

        async def offices_rendered() -> bool:
            return bool(await page.find_elements(selector))

        if not await wait_for_condition(offices_rendered, timeout_ms=self._cfg.content_timeout_ms):
            logger.info("No office list rendered within %sms", self._cfg.content_timeout_ms)
            return []

        candidates: List[OfficeCandidate] = []
        seen: set[str] = set()
        for element in await page.find_elements(selector):
            external_id = ((await element.get_attribute("data-id")) or "").strip()
            lines = [line.strip() for line in (await element.text()).splitlines() if line.strip()]
            if not external_id or not lines or external_id in seen:
                continue
            seen.add(external_id)
            candidates.append(OfficeCandidate(external_id=external_id, display_name=lines[0]))

        logger.info("Found %s offices", len(candidates))
        return candidates

    async def select_office(self, page: PageDriver, office: OfficeCandidate) -> bool:
        """
        Click the office and wait for either navigation or a slot marker.

        Сайт иногда переключается без события навигации, поэтому ждём
        первое из двух; если ни одно не случилось, идём дальше как есть.
        """
        selector = f'{self._cfg.office_selector}[data-id="{office.external_id}"]'
        elements = await page.find_elements(selector)
        if not elements:
            logger.warning("Office element not found: %s", office.display_name)
            return False

        await human_delay(self._cfg.step_delay_min, self._cfg.step_delay_max)
        timeout_ms = self._cfg.selection_timeout_ms
        waiters = [
            asyncio.create_task(page.wait_for_navigation(timeout_ms=timeout_ms)),
            asyncio.create_task(
                page.wait_for_selector(self._adapter.any_marker_selector, timeout_ms=timeout_ms)
            ),
        ]
        try:
            await elements[0].click()
            logger.info("Clicked %s, waiting for page response", office.display_name)
            resolved = await self._first_success(waiters, timeout_ms / 1000)
        finally:
            for task in waiters:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if not resolved:
            logger.warning("No navigation for %s, continuing anyway", office.display_name)
            await asyncio.sleep(self._cfg.settle_delay)
        return True

    async def _first_success(self, tasks: List[asyncio.Task], timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        pending = set(tasks)
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            done, pending = await asyncio.wait(
                pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                exc = task.exception()
                if exc is None:
                    return True
                if classify_error(exc) is ErrorKind.BROWSER_FAULT:
                    raise exc
        return False

    async def extract_slots(self, page: PageDriver, office: OfficeCandidate) -> ExtractionResult:
        result = await self._adapter.extract(page, office, utcnow())
        logger.info(
            "Found %s slots for %s (family=%s, markers=%s)",
            len(result.slots),
            office.display_name,
            result.family or "none",
            result.markers_found,
        )
        return result

    async def return_to_office_list(self, page: PageDriver, url: str) -> None:
        """Go back for the next office; fall back to a fresh load of the entry URL."""
        try:
            went_back = await page.go_back(timeout_ms=self._cfg.back_timeout_ms)
        except Exception as e:  # noqa: BLE001
            if classify_error(e) is not ErrorKind.NETWORK:
                raise
            logger.warning("Going back failed: %s", e)
            went_back = False

        if went_back:
            await human_delay(self._cfg.step_delay_min, self._cfg.step_delay_max)
            return

        logger.info("Re-entering booking flow from %s", url[:80])
        await self.enter_flow(page, url)


__all__ = ["NavState", "NavigationEngine", "match_offices"]
