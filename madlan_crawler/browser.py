# madlan_crawler/browser.py
"""Page-automation capability and its Playwright implementation.

The pipeline only depends on `PageHandle` / `BrowserSession`. A page load
ends in a `PageSnapshot`: the rendered HTML plus the JSON API bodies that
were captured while the page loaded. Captured bodies go into a bounded
queue which `load_snapshot` drains once loading is done.
"""
import asyncio
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, List, Optional, Protocol

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PWTimeout
from playwright.async_api import async_playwright

from .errors import FetchError
from .utils import logger

API_PATTERN = "/api"
CAPTURE_QUEUE_SIZE = 50
POPUP_SELECTORS = ('button:has-text("אחר-כך")',)
# section headings that collapse their content until clicked
PANEL_HEADINGS = ("בתי ספר", "בניה חדשה", "דירוגי השכנים", "מחירי דירות")


@dataclass
class PageSnapshot:
    url: str
    html: str
    status: int = 200
    api_payloads: List[Any] = field(default_factory=list)

    @cached_property
    def soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.html or "", "lxml")


class PageHandle(Protocol):
    @property
    def url(self) -> str: ...

    async def goto(self, url: str, timeout_ms: int) -> int: ...

    async def text(self, selector: str) -> Optional[str]: ...

    async def attribute(self, selector: str, name: str) -> Optional[str]: ...

    async def wait_for(self, selector: str, timeout_ms: int) -> bool: ...

    async def click(self, selector: str, timeout_ms: int) -> bool: ...

    async def content(self) -> str: ...

    def observe_json(self, pattern: str) -> asyncio.Queue: ...

    async def close(self) -> None: ...


class BrowserSession(Protocol):
    async def start(self) -> None: ...

    async def open_page(self) -> PageHandle: ...

    async def close(self) -> None: ...


class PlaywrightPage:
    def __init__(self, page):
        self._page = page

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url, timeout_ms):
        try:
            response = await self._page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PWTimeout as e:
            raise FetchError(f"timeout loading {url}") from e
        except PlaywrightError as e:
            raise FetchError(f"failed loading {url}: {e}") from e
        return response.status if response else 0

    async def text(self, selector):
        loc = self._page.locator(selector).first
        if await loc.count() == 0:
            return None
        return await loc.text_content()

    async def attribute(self, selector, name):
        loc = self._page.locator(selector).first
        if await loc.count() == 0:
            return None
        return await loc.get_attribute(name)

    async def wait_for(self, selector, timeout_ms):
        try:
            await self._page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PWTimeout:
            return False

    async def click(self, selector, timeout_ms):
        loc = self._page.locator(selector).first
        try:
            if await loc.count() == 0:
                return False
            await loc.click(timeout=timeout_ms)
            return True
        except PlaywrightError as e:
            logger.debug("Click on %s failed: %s", selector, e)
            return False

    async def content(self):
        return await self._page.content()

    def observe_json(self, pattern, maxsize=CAPTURE_QUEUE_SIZE):
        queue = asyncio.Queue(maxsize=maxsize)

        async def on_response(response):
            if pattern not in response.url:
                return
            try:
                body = await response.json()
            except (PlaywrightError, ValueError):
                logger.debug("Non-JSON API response from %s", response.url)
                return
            try:
                queue.put_nowait(body)
            except asyncio.QueueFull:
                logger.debug("Capture queue full, dropping %s", response.url)

        self._page.on("response", on_response)
        return queue

    async def close(self):
        await self._page.close()


class PlaywrightSession:
    """One Chromium instance with a single he-IL browsing context."""

    def __init__(self, config):
        self.config = config
        self._pw = None
        self._browser = None
        self._context = None

    async def start(self):
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(headless=self.config.headless)
        self._context = await self._browser.new_context(
            locale="he-IL",
            user_agent=self.config.user_agent,
            viewport={"width": 1366, "height": 900},
        )
        logger.debug("Browser session started")

    async def open_page(self):
        return PlaywrightPage(await self._context.new_page())

    async def close(self):
        if self._context is not None:
            await self._context.close()
        if self._browser is not None:
            await self._browser.close()
        if self._pw is not None:
            await self._pw.stop()
        self._pw = self._browser = self._context = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()


def drain(queue: asyncio.Queue) -> List[Any]:
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


async def load_snapshot(page: PageHandle, url: str, timeout_ms: int, expand_panels: bool = False,
                        settle_seconds: float = 1.0) -> PageSnapshot:
    """Navigate, tidy the page and capture it."""
    queue = page.observe_json(API_PATTERN)
    status = await page.goto(url, timeout_ms)
    if settle_seconds:
        await asyncio.sleep(settle_seconds)
    for selector in POPUP_SELECTORS:
        await page.click(selector, 2000)
    if expand_panels:
        for heading in PANEL_HEADINGS:
            if await page.click(f'h3:has-text("{heading}") >> xpath=..', 3000) and settle_seconds:
                await asyncio.sleep(settle_seconds / 2)
    html = await page.content()
    return PageSnapshot(url=page.url or url, html=html, status=status, api_payloads=drain(queue))
