"""
Worker side of a scraping tab: receives instructions over the tab's
``content`` channel and runs a PageWalker for each accepted start.
"""
import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from keyword_sleuth.channels import Port
from keyword_sleuth.config import Timings
from keyword_sleuth.errors import ChannelClosedError
from keyword_sleuth.page_walker import PageDriver, PageWalker, SessionState, WalkState
from keyword_sleuth.schemas import (
    BusyEvent,
    CancelledEvent,
    CancelScraping,
    ErrorEvent,
    Event,
    ProductRecord,
    ProgressEvent,
    ResultEvent,
    StartScraping,
    worker_command_adapter,
)
from keyword_sleuth.sites import get_profile

logger = logging.getLogger(__name__)


class _WalkReporter:
    """Posts one walk's outcomes, tagged with that walk's keyword and site."""

    def __init__(self, session: "WorkerSession", state: SessionState):
        self.session = session
        self.state = state

    async def on_progress(self, count: int) -> None:
        self.session.post(
            ProgressEvent(keyword=self.state.keyword, site=self.state.site, count=count)
        )

    async def on_result(self, records: list[ProductRecord]) -> None:
        self.session.post(
            ResultEvent(
                keyword=self.state.keyword,
                site=self.state.site,
                data=records,
                count=len(records),
            )
        )

    async def on_error(self, message: str) -> None:
        self.session.post(
            ErrorEvent(keyword=self.state.keyword, site=self.state.site, error=message)
        )


class WorkerSession:
    """
    Bound to one tab and its channel. Runs at most one walk at a time.
    """

    def __init__(
        self,
        tab_id: int,
        port: Port,
        driver: PageDriver,
        timings: Timings | None = None,
    ):
        self.tab_id = tab_id
        self.port = port
        self.driver = driver
        self.timings = timings or Timings()
        self.state: SessionState | None = None
        self.walker: PageWalker | None = None
        self._task: asyncio.Task | None = None

        port.on_message.add_listener(self.handle_message)
        port.on_disconnect.add_listener(self._on_disconnect)

    @property
    def is_active(self) -> bool:
        return self.state is not None and self.state.is_active

    def handle_message(self, message: dict[str, Any], port: Port) -> None:
        try:
            command = worker_command_adapter.validate_python(message)
        except ValidationError as e:
            logger.warning(f"[tab {self.tab_id}] Ignoring malformed instruction: {e.errors()}")
            return

        if isinstance(command, StartScraping):
            self.start(command)
        elif isinstance(command, CancelScraping):
            self.cancel()

    def start(self, command: StartScraping) -> bool:
        """
        Begins a walk from page 1. A start while a walk is active is refused
        with a ``busy`` event and returns False.
        """
        if self.is_active:
            logger.warning(
                f"[tab {self.tab_id}] Already scraping '{self.state.keyword}' on "
                f"{self.state.site}; refusing '{command.keyword}'"
            )
            self.post(BusyEvent(keyword=command.keyword, site=command.site))
            return False

        profile = get_profile(command.site)
        state = SessionState(
            keyword=command.keyword,
            site=command.site,
            max_pages=profile.max_pages,
        )
        self.state = state
        self.walker = PageWalker(
            profile,
            self.driver,
            state,
            _WalkReporter(self, state),
            timings=self.timings,
        )
        logger.info(f"[tab {self.tab_id}] Scraping '{command.keyword}' on {profile.display_name}")
        self._task = asyncio.create_task(self.walker.run())
        return True

    def cancel(self) -> None:
        if not self.is_active:
            logger.debug(f"[tab {self.tab_id}] Cancel with no active walk")
            return
        state = self.state
        self._stop()
        logger.info(f"[tab {self.tab_id}] Cancelled '{state.keyword}' on {state.site}")
        self.post(CancelledEvent(keyword=state.keyword, site=state.site))

    def terminate(self) -> None:
        """Stops any walk without reporting. Used when the tab goes away."""
        self._stop()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> WalkState | None:
        if self._task is None:
            return None
        try:
            return await self._task
        except asyncio.CancelledError:
            return WalkState.CANCELLED

    def post(self, event: Event) -> None:
        try:
            self.port.post_message(event.to_wire())
        except ChannelClosedError:
            logger.warning(f"[tab {self.tab_id}] Dropping '{event.type}': channel closed")

    def _stop(self) -> None:
        if self.state is not None:
            self.state.is_active = False
            self.state.token.cancel()

    def _on_disconnect(self, port: Port) -> None:
        logger.info(f"[tab {self.tab_id}] Channel closed; stopping")
        self.terminate()
