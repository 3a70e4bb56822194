"""Playwright browser owned by the worker process.

One Chromium instance, one context, one page. The page is leased to one job
at a time; the context keeps its cookies between jobs so a still-valid login
is reused.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

logger = structlog.get_logger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
)


class BrowserService:
    """Starts Chromium lazily and hands out exclusive page leases."""

    def __init__(
        self,
        headless: bool = True,
        screenshots_dir: str = "data/screenshots",
        navigation_timeout_s: float = 30.0,
        element_timeout_s: float = 10.0,
    ):
        self._headless = headless
        self._screenshots_dir = Path(screenshots_dir)
        self._navigation_timeout_s = navigation_timeout_s
        self._element_timeout_s = element_timeout_s
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._lock = asyncio.Lock()

    @property
    def is_started(self) -> bool:
        return self._page is not None

    async def start(self) -> None:
        """Launch the browser. Safe to call again once started."""
        if self.is_started:
            return

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._headless,
            args=["--no-sandbox", "--disable-dev-shm-usage"],
        )
        self._context = await self._browser.new_context(
            user_agent=USER_AGENT,
            locale="ru-RU",
            accept_downloads=True,
            viewport={"width": 1366, "height": 900},
        )
        self._context.set_default_timeout(self._element_timeout_s * 1000)
        self._context.set_default_navigation_timeout(self._navigation_timeout_s * 1000)
        self._page = await self._context.new_page()
        logger.info("browser_started", headless=self._headless)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[Page]:
        """Exclusive use of the page for the duration of the block."""
        if not self.is_started:
            raise RuntimeError("Browser is not started")
        async with self._lock:
            assert self._page is not None
            yield self._page

    async def screenshot(self, label: str) -> Optional[str]:
        """Save a full-page screenshot for post-mortem. Returns the path."""
        if self._page is None:
            return None
        self._screenshots_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        path = self._screenshots_dir / f"{stamp}_{label}.png"
        try:
            await self._page.screenshot(path=str(path), full_page=True)
        except Exception as e:
            logger.warning("screenshot_failed", label=label, error=str(e))
            return None
        logger.info("screenshot_saved", path=str(path))
        return str(path)

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
        logger.info("browser_closed")
