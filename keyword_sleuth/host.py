"""
Tab host: the browser-side collaborator the supervisor drives.
"""
import logging
from itertools import count
from typing import Protocol

from keyword_sleuth.channels import EventHook, Port, open_channel
from keyword_sleuth.config import Timings
from keyword_sleuth.errors import NavigationError
from keyword_sleuth.page_walker import PageDriver
from keyword_sleuth.worker import WorkerSession

logger = logging.getLogger(__name__)

WORKER_CHANNEL = "content"


class TabHost(Protocol):
    """
    attributes:
        on_updated: Fired with (tab_id, status); status is "loading" or "complete".
        on_removed: Fired with (tab_id) once a tab is gone, however it closed.
        on_connect: Fired with the supervisor end of each new worker channel.
    """

    on_updated: EventHook
    on_removed: EventHook
    on_connect: EventHook

    async def create_tab(self, url: str, active: bool = False) -> int:
        ...

    async def inject_worker(self, tab_id: int) -> None:
        ...

    async def remove_tab(self, tab_id: int) -> None:
        ...


class BaseTabHost:
    """
    Worker injection and tab bookkeeping shared by every host.

    Subclasses open and close the actual pages and hand out a PageDriver per
    tab. They report load progress through ``_set_status`` and tabs closed
    from outside through ``_tab_closed``.
    """

    def __init__(self, timings: Timings | None = None):
        self.timings = timings or Timings()
        self.on_updated = EventHook("tabs.updated")
        self.on_removed = EventHook("tabs.removed")
        self.on_connect = EventHook("runtime.connect")
        self.sessions: dict[int, WorkerSession] = {}
        self._worker_ports: dict[int, Port] = {}
        self._tabs: set[int] = set()
        self._ids = count(1)

    @property
    def tab_ids(self) -> set[int]:
        return set(self._tabs)

    async def _open_page(self, tab_id: int, url: str, active: bool) -> None:
        raise NotImplementedError

    async def _close_page(self, tab_id: int) -> None:
        raise NotImplementedError

    def _driver_for(self, tab_id: int) -> PageDriver:
        raise NotImplementedError

    async def create_tab(self, url: str, active: bool = False) -> int:
        tab_id = next(self._ids)
        self._tabs.add(tab_id)
        logger.info(f"Opening tab {tab_id}: {url}")
        try:
            await self._open_page(tab_id, url, active)
        except Exception as e:
            self._tabs.discard(tab_id)
            raise NavigationError(f"Could not open tab for {url}: {e}") from e
        return tab_id

    async def inject_worker(self, tab_id: int) -> None:
        if tab_id not in self._tabs:
            raise NavigationError(f"No tab with id {tab_id}")
        if tab_id in self.sessions:
            logger.debug(f"Worker already injected in tab {tab_id}")
            return

        worker_end, supervisor_end = open_channel(WORKER_CHANNEL, sender_tab=tab_id)
        self.sessions[tab_id] = WorkerSession(
            tab_id, worker_end, self._driver_for(tab_id), timings=self.timings
        )
        self._worker_ports[tab_id] = worker_end
        logger.debug(f"Worker injected in tab {tab_id}")
        self.on_connect.emit(supervisor_end)

    async def remove_tab(self, tab_id: int) -> None:
        if not self._forget(tab_id):
            raise NavigationError(f"No tab with id {tab_id}")
        try:
            await self._close_page(tab_id)
        finally:
            logger.info(f"Closed tab {tab_id}")
            self.on_removed.emit(tab_id)

    async def close(self) -> None:
        for tab_id in sorted(self._tabs):
            await self.remove_tab(tab_id)

    def _set_status(self, tab_id: int, status: str) -> None:
        if tab_id in self._tabs:
            self.on_updated.emit(tab_id, status)

    def _tab_closed(self, tab_id: int) -> None:
        if self._forget(tab_id):
            logger.info(f"Tab {tab_id} closed outside the supervisor")
            self.on_removed.emit(tab_id)

    def _forget(self, tab_id: int) -> bool:
        if tab_id not in self._tabs:
            return False
        self._tabs.discard(tab_id)
        session = self.sessions.pop(tab_id, None)
        if session is not None:
            session.terminate()
        port = self._worker_ports.pop(tab_id, None)
        if port is not None:
            port.disconnect()
        return True
