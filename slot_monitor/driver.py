"""
Page automation contract used by the navigation engine.

Контракт страницы: навигация, поиск элементов, чтение текста/атрибутов,
клик и ожидания с верхней границей по времени. Движок навигации зависит
только от этих протоколов; основная реализация PlaywrightPageDriver.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, List, Optional, Protocol

from playwright.async_api import ElementHandle, Page

from .errors import NavigationError

logger = logging.getLogger(__name__)


class PageElement(Protocol):
    async def text(self) -> str: ...

    async def get_attribute(self, name: str) -> Optional[str]: ...

    async def click(self) -> None: ...


class PageDriver(Protocol):
    @property
    def url(self) -> str: ...

    async def goto(self, url: str, *, timeout_ms: int) -> None: ...

    async def wait_until_ready(self, *, timeout_ms: int) -> None: ...

    async def find_elements(self, selector: str) -> List[PageElement]: ...

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> None: ...

    async def wait_for_navigation(self, *, timeout_ms: int) -> None: ...

    async def go_back(self, *, timeout_ms: int) -> bool: ...


async def wait_for_condition(
    predicate: Callable[[], Awaitable[bool]],
    *,
    timeout_ms: int,
    poll_ms: int = 250,
) -> bool:
    """
    Poll predicate until it returns True or timeout_ms elapses.

    Возвращает False по таймауту, исключений не бросает.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000
    while True:
        if await predicate():
            return True
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(poll_ms / 1000)


class PlaywrightElement:
    """PageElement backed by a Playwright ElementHandle."""

    def __init__(self, handle: ElementHandle) -> None:
        self._handle = handle

    async def text(self) -> str:
        return (await self._handle.text_content()) or ""

    async def get_attribute(self, name: str) -> Optional[str]:
        return await self._handle.get_attribute(name)

    async def click(self) -> None:
        await self._handle.scroll_into_view_if_needed()
        await self._handle.click(delay=random.randint(50, 150))


class PlaywrightPageDriver:
    """PageDriver backed by a Playwright Page."""

    def __init__(self, page: Page) -> None:
        self._page = page

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url: str, *, timeout_ms: int) -> None:
        resp = await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        if resp and resp.status >= 400:
            raise NavigationError(f"HTTP {resp.status} while loading {url}")

    async def wait_until_ready(self, *, timeout_ms: int) -> None:
        await self._page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)

    async def find_elements(self, selector: str) -> List[PageElement]:
        handles = await self._page.query_selector_all(selector)
        return [PlaywrightElement(h) for h in handles]

    async def wait_for_selector(self, selector: str, *, timeout_ms: int) -> None:
        await self._page.wait_for_selector(selector, timeout=timeout_ms)

    async def wait_for_navigation(self, *, timeout_ms: int) -> None:
        main_frame = self._page.main_frame
        await self._page.wait_for_event(
            "framenavigated",
            predicate=lambda frame: frame == main_frame,
            timeout=timeout_ms,
        )
        await self._page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)

    async def go_back(self, *, timeout_ms: int) -> bool:
        resp = await self._page.go_back(wait_until="domcontentloaded", timeout=timeout_ms)
        # None: истории нет, вернуться некуда
        return resp is not None


__all__ = [
    "PageElement",
    "PageDriver",
    "PlaywrightElement",
    "PlaywrightPageDriver",
    "wait_for_condition",
]
