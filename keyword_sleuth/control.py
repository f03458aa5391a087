"""
Headless control surface: keyword list, stored products and the command side
of the scraping protocol.
"""
import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from keyword_sleuth.channels import Port
from keyword_sleuth.errors import ChannelClosedError
from keyword_sleuth.schemas import (
    BusyEvent,
    CancelCommand,
    CancelledEvent,
    ConnectedEvent,
    ErrorEvent,
    JobEvent,
    JobKey,
    PingCommand,
    PongEvent,
    ProgressEvent,
    ResultEvent,
    Site,
    StartCommand,
    control_event_adapter,
)
from keyword_sleuth.storage import KEYWORDS, PRODUCTS, SCRAPING_STATE, KeyValueStore
from keyword_sleuth.utils.converters import parse_iso_date, utc_now

logger = logging.getLogger(__name__)


class SurfaceStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class ScrapingState(BaseModel):
    """Persisted under ``scrapingState`` while a scrape is in flight."""

    is_scraping: bool = Field(default=False, alias="isScraping")
    current_keyword: str | None = Field(default=None, alias="currentKeyword")
    current_site: Site | None = Field(default=None, alias="currentSite")
    timestamp: datetime = Field(default_factory=utc_now)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @property
    def key(self) -> JobKey | None:
        if not self.is_scraping or not self.current_keyword or self.current_site is None:
            return None
        return JobKey(keyword=self.current_keyword, site=self.current_site)


class KeywordStats(BaseModel):
    keyword: str
    counts: dict[Site, int]
    last_updated: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class ControlSurface:
    """
    attributes:
        connect: Opens a fresh channel to the supervisor.
        store: Where keywords, products and the in-flight scrape are kept.
        reconnect_delay: Seconds to wait before reconnecting a dropped channel.
        status: Last known state, as a status line would show it.
        count: Live product count of the current scrape.
    """

    def __init__(
        self,
        connect: Callable[[], Port],
        store: KeyValueStore,
        reconnect_delay: float = 2.0,
    ):
        self.connect = connect
        self.store = store
        self.reconnect_delay = reconnect_delay

        self.port: Port | None = None
        self.status = SurfaceStatus.DISCONNECTED
        self.keywords: list[str] = []
        self.products: dict[str, dict[str, Any]] = {}
        self.scraping = ScrapingState()
        self.count = 0
        self.last_error: str | None = None
        self.last_pong: datetime | None = None

        self._outcome: asyncio.Future | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> None:
        self._closed = False
        self.load()
        self._connect()

        saved = self.store.get(SCRAPING_STATE).get(SCRAPING_STATE)
        if saved:
            try:
                state = ScrapingState.model_validate(saved)
            except ValidationError as e:
                logger.warning(f"Discarding unreadable scraping state: {e.errors()}")
                self.store.remove(SCRAPING_STATE)
            else:
                if state.key is not None:
                    self._restore(state)

    def close(self) -> None:
        self._closed = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        if self.port is not None:
            self.port.disconnect()
            self.port = None
        self.status = SurfaceStatus.DISCONNECTED

    def load(self) -> None:
        data = self.store.get([KEYWORDS, PRODUCTS])
        self.keywords = list(data.get(KEYWORDS) or [])
        self.products = dict(data.get(PRODUCTS) or {})

    def _connect(self) -> None:
        try:
            port = self.connect()
        except Exception as e:
            logger.error(f"Could not connect to supervisor: {e}")
            self.status = SurfaceStatus.DISCONNECTED
            self._schedule_reconnect()
            return
        port.on_message.add_listener(self.handle_message)
        port.on_disconnect.add_listener(self._on_disconnect)
        self.port = port

    def _on_disconnect(self, port: Port) -> None:
        if port is not self.port:
            return
        logger.warning("Disconnected from supervisor")
        self.port = None
        self.status = SurfaceStatus.DISCONNECTED
        if not self._closed:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        if not self._closed and self.port is None:
            logger.info("Reconnecting to supervisor")
            self._connect()

    # ------------------------------------------------------------------
    # Keywords and products
    # ------------------------------------------------------------------
    def add_keyword(self, keyword: str) -> bool:
        """
        Adds a keyword with empty product lists. Returns False if it already
        exists; raises ValueError if it is blank.
        """
        keyword = (keyword or "").strip()
        if not keyword:
            raise ValueError("Keyword must not be empty.")
        if keyword in self.keywords:
            logger.warning(f"Keyword '{keyword}' already exists")
            return False

        self.keywords.append(keyword)
        self.products[keyword] = self._empty_entry()
        self._save()
        logger.info(f"Keyword '{keyword}' added")
        return True

    def delete_keyword(self, keyword: str) -> bool:
        if keyword not in self.keywords:
            return False
        self.keywords.remove(keyword)
        self.products.pop(keyword, None)
        self._save()
        logger.info(f"Keyword '{keyword}' deleted")
        return True

    def clear_all(self) -> None:
        self.keywords = []
        self.products = {}
        self._save()
        logger.info("All keywords and products deleted")

    def products_for(self, keyword: str, site: Site | str) -> list[dict[str, Any]]:
        entry = self.products.get(keyword) or {}
        return list(entry.get(Site(site).value) or [])

    def keyword_stats(self, keyword: str) -> KeywordStats | None:
        entry = self.products.get(keyword)
        if entry is None:
            return None
        timestamp = entry.get("timestamp")
        return KeywordStats(
            keyword=keyword,
            counts={site: len(entry.get(site.value) or []) for site in Site},
            last_updated=parse_iso_date(timestamp) if timestamp else None,
        )

    def totals(self) -> dict[Site, int]:
        totals = {site: 0 for site in Site}
        for entry in self.products.values():
            for site in Site:
                totals[site] += len(entry.get(site.value) or [])
        return totals

    def _empty_entry(self) -> dict[str, Any]:
        entry: dict[str, Any] = {site.value: [] for site in Site}
        entry["timestamp"] = utc_now().isoformat()
        return entry

    def _save(self) -> None:
        self.store.set({KEYWORDS: self.keywords, PRODUCTS: self.products})

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    @property
    def is_scraping(self) -> bool:
        return self.scraping.is_scraping

    @property
    def current_key(self) -> JobKey | None:
        return self.scraping.key

    def start(self, keyword: str, site: Site | str) -> bool:
        """
        Asks the supervisor to scrape ``keyword`` on ``site``. Refused while
        another scrape from this surface is running or with no connection.
        """
        if self.is_scraping:
            logger.warning(f"Scrape already in progress: {self.current_key}")
            return False
        if self.port is None or not self.port.connected:
            logger.error("No connection to the supervisor")
            return False

        command = StartCommand(keyword=keyword, site=site)
        self.scraping = ScrapingState(
            is_scraping=True,
            current_keyword=command.keyword,
            current_site=command.site,
        )
        self._begin()
        self.store.set({SCRAPING_STATE: self.scraping.model_dump(mode="json", by_alias=True)})
        if not self._send(command):
            self._reset()
            return False
        logger.info(f"Started scrape: {command.key}")
        return True

    def cancel(self) -> bool:
        key = self.current_key
        if key is None:
            return False
        return self._send(CancelCommand(keyword=key.keyword, site=key.site))

    def ping(self) -> bool:
        return self._send(PingCommand())

    async def wait_for_outcome(self, timeout: float | None = None) -> JobEvent | None:
        """
        Resolves with the terminal event (result, error, cancelled or busy)
        of the current scrape. Returns None when nothing is running.
        """
        if self._outcome is None:
            return None
        return await asyncio.wait_for(asyncio.shield(self._outcome), timeout=timeout)

    def _send(self, command) -> bool:
        if self.port is None:
            return False
        try:
            self.port.post_message(command.to_wire())
        except ChannelClosedError as e:
            logger.error(f"Could not send '{command.type}': {e}")
            return False
        return True

    def _begin(self) -> None:
        self.count = 0
        self.last_error = None
        self.status = SurfaceStatus.RUNNING
        self._outcome = asyncio.get_running_loop().create_future()

    def _restore(self, state: ScrapingState) -> None:
        logger.info(f"Restoring in-flight scrape: {state.key}")
        self.scraping = state
        self._begin()

    def _reset(self) -> None:
        self.scraping = ScrapingState()
        self.store.remove(SCRAPING_STATE)

    def _finish(self, event: JobEvent, status: SurfaceStatus) -> None:
        self.status = status
        self._reset()
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(event)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def handle_message(self, message: dict[str, Any], port: Port) -> None:
        try:
            event = control_event_adapter.validate_python(message)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed event: {e.errors()}")
            return

        if isinstance(event, ConnectedEvent):
            if not self.is_scraping:
                self.status = SurfaceStatus.CONNECTED
            logger.info("Connected to supervisor")
            return
        if isinstance(event, PongEvent):
            self.last_pong = event.timestamp
            return

        if event.key != self.current_key:
            logger.debug(f"Ignoring '{event.type}' for {event.key}")
            return

        if isinstance(event, ProgressEvent):
            self.count = event.count
            logger.info(f"[{event.key}] {event.count} products so far")
        elif isinstance(event, ResultEvent):
            self._store_result(event)
            logger.info(f"[{event.key}] {event.count} products collected")
            self._finish(event, SurfaceStatus.DONE)
        elif isinstance(event, ErrorEvent):
            self.last_error = event.error
            logger.error(f"[{event.key}] Scrape failed: {event.error}")
            self._finish(event, SurfaceStatus.ERROR)
        elif isinstance(event, CancelledEvent):
            logger.warning(f"[{event.key}] Scrape cancelled")
            self._finish(event, SurfaceStatus.CANCELLED)
        elif isinstance(event, BusyEvent):
            logger.warning(f"[{event.key}] Already being scraped elsewhere")
            self._finish(event, SurfaceStatus.CONNECTED)

    def _store_result(self, event: ResultEvent) -> None:
        entry = self.products.get(event.keyword)
        if entry is None:
            entry = self._empty_entry()
            self.products[event.keyword] = entry
        entry[event.site.value] = [record.model_dump(mode="json", by_alias=True) for record in event.data]
        entry["timestamp"] = utc_now().isoformat()
        self.count = event.count
        self._save()