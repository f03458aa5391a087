import logging
from collections.abc import Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from keyword_sleuth.config import Timings
from keyword_sleuth.dom import HtmlElement
from keyword_sleuth.errors import PageUnavailableError

logger = logging.getLogger(__name__)


def _ms(seconds: float) -> float:
    return seconds * 1000


class PlaywrightPageDriver:
    """
    PageDriver over one Playwright page.

    Each snapshot parses the rendered document, so extraction sees the DOM as
    the site's scripts left it.
    """

    def __init__(self, page: Page, timings: Timings | None = None):
        self.page = page
        self.timings = timings or Timings()

    async def snapshot(self) -> HtmlElement:
        if self.page.is_closed():
            raise PageUnavailableError("Page is closed")
        try:
            html = await self.page.content()
        except PlaywrightError as e:
            raise PageUnavailableError(f"Could not read page: {e.message}") from e
        return HtmlElement.from_html(html, self.page.url)

    async def go_next(self, selectors: Sequence[str]) -> bool:
        for selector in selectors:
            button = self.page.locator(selector).first
            try:
                if not await button.count():
                    continue
            except PlaywrightError:
                continue

            before_url = self.page.url
            logger.info(f"Next page control '{selector}' found. Clicking...")
            await button.click(timeout=_ms(self.timings.click_timeout) or None)
            logger.debug(f"Clicked next from {before_url}")
            return True

        logger.info("No next page control found")
        return False

    async def wait_for_load(self, timeout: float) -> None:
        if self.page.is_closed():
            raise PageUnavailableError("Page is closed")
        if timeout <= 0:
            return
        try:
            await self.page.wait_for_load_state("load", timeout=_ms(timeout))
        except PlaywrightTimeoutError:
            logger.warning(f"Page still loading after {timeout}s; continuing")
        except PlaywrightError as e:
            raise PageUnavailableError(f"Page went away while loading: {e.message}") from e
