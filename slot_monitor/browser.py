"""
Playwright-based browser lifecycle for the appointment monitor.

Браузер-модуль на Playwright:
- один долгоживущий процесс Chromium на всё приложение
- выдача изолированных страниц (контекстов) в аренду и их гарантированное закрытие
- проверка здоровья и самовосстановление через перезапуск
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from playwright.async_api import Browser, Playwright, Route, async_playwright

from .config import BrowserConfig, get_settings
from .driver import PlaywrightPageDriver
from .errors import BrowserUnavailable
from .models import BrowserHealth

logger = logging.getLogger(__name__)


LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-blink-features=AutomationControlled",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-extensions",
    "--no-first-run",
    "--no-default-browser-check",
    "--mute-audio",
]

# Прячем признаки автоматизации до выполнения скриптов страницы
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
Object.defineProperty(navigator, 'plugins', {
    get: () => [
        { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer' },
        { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai' },
    ],
});
"""


class BrowserController:
    """
    Owns the single Playwright browser of the process.

    Only this class launches, closes or replaces the browser.
    """

    def __init__(self, cfg: BrowserConfig | None = None) -> None:
        if cfg is None:
            cfg = get_settings().browser
        self._cfg = cfg
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self.launch_error: Optional[str] = None
        self.restarts: int = 0
        self.last_health: Optional[BrowserHealth] = None

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def initialize(self) -> None:
        """Launch the browser unless it is already running."""
        async with self._lock:
            if self.is_running:
                return
            await self._launch()

    async def restart(self) -> None:
        """Best-effort close of the current browser, then launch a new one."""
        async with self._lock:
            logger.info("Restarting browser")
            await self._shutdown()
            self.restarts += 1
            await self._launch()

    async def close(self) -> None:
        async with self._lock:
            await self._shutdown()

    async def _launch(self) -> None:
        logger.info("Starting Playwright browser (headless=%s)", self._cfg.headless)
        try:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            launch_kwargs: dict[str, Any] = {
                "headless": self._cfg.headless,
                "args": LAUNCH_ARGS,
                "ignore_default_args": ["--enable-automation"],
            }
            if self._cfg.executable_path:
                launch_kwargs["executable_path"] = self._cfg.executable_path
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)
        except Exception as e:  # noqa: BLE001
            self.launch_error = str(e)
            logger.error("Failed to launch browser: %s", e)
            raise BrowserUnavailable(f"Browser launch failed: {e}") from e

        self._browser.on("disconnected", lambda _: logger.warning("Browser disconnected"))
        self.launch_error = None
        logger.info("Browser started")

    async def _shutdown(self) -> None:
        """Close browser and Playwright, swallowing errors of a dead process."""
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:  # noqa: BLE001
                logger.warning("Ignoring error while closing browser: %s", e)
        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:  # noqa: BLE001
                logger.warning("Ignoring error while stopping Playwright: %s", e)

    async def _block_heavy_resources(self, route: Route) -> None:
        if route.request.resource_type in self._cfg.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    @asynccontextmanager
    async def lease_page(self) -> AsyncIterator[PlaywrightPageDriver]:
        """
        Lease a fresh isolated page.

        Контекст закрывается при любом выходе: успех, исключение, отмена.

        Пример:
            async with controller.lease_page() as page:
                await page.goto(url, timeout_ms=10000)
        """
        browser = self._browser
        if browser is None or not browser.is_connected():
            raise BrowserUnavailable("Browser not initialised")

        context = await browser.new_context(
            viewport={"width": self._cfg.viewport_width, "height": self._cfg.viewport_height},
            user_agent=self._cfg.user_agent,
            locale="en-US",
        )
        try:
            await context.add_init_script(STEALTH_SCRIPT)
            if self._cfg.blocked_resource_types:
                await context.route("**/*", self._block_heavy_resources)
            page = await context.new_page()
            yield PlaywrightPageDriver(page)
        finally:
            try:
                await context.close()
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to close leased page: %s", e)

    async def health_check(self) -> BrowserHealth:
        """
        Open a blank page and measure round-trip latency.

        При неудаче пытаемся перезапустить браузер; ошибки перезапуска глушим.
        """
        started = time.monotonic()
        try:
            async with self.lease_page() as page:
                await page.goto("about:blank", timeout_ms=self._cfg.health_timeout_ms)
        except Exception as e:  # noqa: BLE001
            latency = (time.monotonic() - started) * 1000
            logger.warning("Browser health check failed: %s", e)
            health = BrowserHealth(browser_ok=False, latency_ms=round(latency, 1), error=str(e))
            try:
                await self.restart()
            except Exception as re:  # noqa: BLE001
                logger.error("Browser restart after failed health check failed: %s", re)
        else:
            latency = (time.monotonic() - started) * 1000
            health = BrowserHealth(browser_ok=True, latency_ms=round(latency, 1))

        self.last_health = health
        return health


__all__ = ["BrowserController", "LAUNCH_ARGS"]
