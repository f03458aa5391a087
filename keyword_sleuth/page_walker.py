"""
Pagination loop for one search job.

The walker reads the current result page, accumulates records, reports the
running total, then clicks through to the next page until the site runs out of
pages, the page cap is reached or the job is cancelled.
"""
import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from keyword_sleuth.config import Timings
from keyword_sleuth.dom import Element
from keyword_sleuth.errors import PageUnavailableError
from keyword_sleuth.record_extractor import RecordExtractor, finalize_records
from keyword_sleuth.schemas import ProductRecord, Site, SiteProfile

logger = logging.getLogger(__name__)


class PageDriver(Protocol):
    """
    Browser-side operations the walker needs from the tab it runs in.
    """

    async def snapshot(self) -> Element:
        """
        Returns the current document. Raises PageUnavailableError if the page
        can no longer be read.
        """
        ...

    async def go_next(self, selectors: Sequence[str]) -> bool:
        """
        Triggers the first "next page" control matched by ``selectors``.
        Returns False when no such control exists.
        """
        ...

    async def wait_for_load(self, timeout: float) -> None:
        """
        Resolves once the document has loaded or ``timeout`` seconds passed,
        whichever comes first.
        """
        ...


class WalkListener(Protocol):
    async def on_progress(self, count: int) -> None:
        ...

    async def on_result(self, records: list[ProductRecord]) -> None:
        ...

    async def on_error(self, message: str) -> None:
        ...


class CancellationToken:
    """
    Cooperative cancellation flag. Waiting on it lets delays end early.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleeps up to ``seconds``. Returns True if cancelled meanwhile.
        """
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


@dataclass
class SessionState:
    keyword: str
    site: Site
    max_pages: int
    current_page: int = 1
    records: list[ProductRecord] = field(default_factory=list)
    is_active: bool = True
    token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled


class WalkState(str, Enum):
    IDLE = "idle"
    WALKING = "walking"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PageWalker:
    """
    Drives one SessionState across a site's result pages.

    A walker runs at most once; later calls to run() return the final state
    without emitting anything.
    """

    def __init__(
        self,
        profile: SiteProfile,
        driver: PageDriver,
        state: SessionState,
        listener: WalkListener,
        timings: Timings | None = None,
    ):
        self.profile = profile
        self.driver = driver
        self.session = state
        self.listener = listener
        self.timings = timings or Timings()
        self.extractor = RecordExtractor(profile)
        self.state = WalkState.IDLE
        self.error: str | None = None

    async def run(self) -> WalkState:
        if self.state is not WalkState.IDLE:
            logger.debug(f"[{self.profile.site}] Walker already {self.state.value}; ignoring run()")
            return self.state

        self.state = WalkState.WALKING
        try:
            final_state = await self._walk()
        except Exception as e:
            logger.exception(f"[{self.profile.site}] Walk failed on page {self.session.current_page}")
            self.error = str(e) or e.__class__.__name__
            final_state = WalkState.FAILED

        self.state = final_state
        self.session.is_active = False

        if final_state is WalkState.COMPLETED:
            records = finalize_records(self.session.records)
            self._check_minimum(records)
            logger.info(f"[{self.profile.site}] Walk completed: {len(records)} products")
            await self.listener.on_result(records)
        elif final_state is WalkState.FAILED:
            # Partial results are never surfaced for a failed walk
            self.session.records.clear()
            await self.listener.on_error(self.error or "Unknown error")
        else:
            logger.info(f"[{self.profile.site}] Walk cancelled on page {self.session.current_page}")

        return final_state

    async def _walk(self) -> WalkState:
        session = self.session
        await self.driver.wait_for_load(self.timings.navigation_timeout)

        while True:
            if self._cancelled():
                return WalkState.CANCELLED

            logger.info(f"[{self.profile.site}] Processing page {session.current_page}/{session.max_pages}")
            page_root = await self.driver.snapshot()
            records = self.extractor.extract_page(
                page_root, session.keyword, page=session.current_page
            )
            session.records.extend(records)

            if self._cancelled():
                return WalkState.CANCELLED
            await self.listener.on_progress(len(session.records))

            if session.current_page >= session.max_pages:
                logger.info(f"[{self.profile.site}] Page cap of {session.max_pages} reached")
                break

            if not await self._advance():
                logger.info(f"[{self.profile.site}] No more pages after page {session.current_page}")
                break

            session.current_page += 1
            await self.driver.wait_for_load(self.timings.navigation_timeout)
            # Client-rendered results need a moment before selectors are reliable
            await session.token.sleep(self.timings.page_gap_delay)

        if self._cancelled():
            return WalkState.CANCELLED
        return WalkState.COMPLETED

    async def _advance(self) -> bool:
        try:
            return await self.driver.go_next(self.profile.next_page_selectors)
        except PageUnavailableError:
            raise
        except Exception as e:
            logger.warning(f"[{self.profile.site}] Next page lookup failed: {e}")
            return False

    def _cancelled(self) -> bool:
        return self.session.cancelled or not self.session.is_active

    def _check_minimum(self, records: list[ProductRecord]) -> None:
        if len(records) < self.profile.min_products:
            logger.warning(
                f"[{self.profile.site}] Only {len(records)} products collected "
                f"(recommended minimum: {self.profile.min_products})"
            )
