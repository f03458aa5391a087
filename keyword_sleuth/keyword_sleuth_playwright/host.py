import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from playwright.async_api import BrowserContext, Page, async_playwright

from keyword_sleuth.config import SleuthSettings, Timings
from keyword_sleuth.host import BaseTabHost
from keyword_sleuth.keyword_sleuth_playwright.driver import PlaywrightPageDriver

logger = logging.getLogger(__name__)


class PlaywrightTabHost(BaseTabHost):
    """
    Tabs are pages of one BrowserContext.

    A page reports "loading" when opened and "complete" on its load event.
    Closing a page by any means fires on_removed.
    """

    def __init__(self, context: BrowserContext, timings: Timings | None = None):
        super().__init__(timings)
        self.context = context
        self.pages: dict[int, Page] = {}

    async def _open_page(self, tab_id: int, url: str, active: bool) -> None:
        page = await self.context.new_page()
        self.pages[tab_id] = page
        page.on("load", lambda _: self._set_status(tab_id, "complete"))
        page.on("close", lambda _: self._on_page_close(tab_id))

        self._set_status(tab_id, "loading")
        timeout = self.timings.navigation_timeout * 1000 or None
        # Returns once the response starts; the load event arrives later
        try:
            await page.goto(url, wait_until="commit", timeout=timeout)
        except Exception:
            self.pages.pop(tab_id, None)
            await page.close()
            raise
        if active:
            await page.bring_to_front()

    async def _close_page(self, tab_id: int) -> None:
        page = self.pages.pop(tab_id, None)
        if page is not None and not page.is_closed():
            await page.close()

    def _driver_for(self, tab_id: int) -> PlaywrightPageDriver:
        return PlaywrightPageDriver(self.pages[tab_id], self.timings)

    def _on_page_close(self, tab_id: int) -> None:
        self.pages.pop(tab_id, None)
        self._tab_closed(tab_id)


@asynccontextmanager
async def playwright_host(settings: SleuthSettings) -> AsyncIterator[PlaywrightTabHost]:
    """Launches the configured browser and yields a host over a fresh context."""
    async with async_playwright() as p:
        browser_type = getattr(p, settings.browser_type)
        logger.info(f"Launching {settings.browser_type} (headless={settings.headless})")
        browser = await browser_type.launch(headless=settings.headless)
        try:
            context = await browser.new_context(locale="es-PE")
            host = PlaywrightTabHost(context, settings.timings)
            try:
                yield host
            finally:
                await host.close()
                # Let page close events settle before the context goes away
                await asyncio.sleep(0)
                await context.close()
        finally:
            await browser.close()
