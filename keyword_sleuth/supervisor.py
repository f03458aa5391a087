"""
Coordinator between the control surface and the per-tab workers.

The supervisor opens one background tab per job, injects the worker, starts
it and relays the worker's events back to the control channel. Every job ends
with its tab closed and its registry entries removed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from keyword_sleuth.channels import Port, open_channel
from keyword_sleuth.config import Timings
from keyword_sleuth.errors import ChannelClosedError, NavigationError
from keyword_sleuth.host import WORKER_CHANNEL, TabHost
from keyword_sleuth.schemas import (
    TERMINAL_EVENT_TYPES,
    BusyEvent,
    CancelCommand,
    CancelledEvent,
    CancelScraping,
    ConnectedEvent,
    ErrorEvent,
    Event,
    JobKey,
    PingCommand,
    PongEvent,
    StartCommand,
    StartScraping,
    control_command_adapter,
    worker_event_adapter,
)
from keyword_sleuth.sites import get_profile
from keyword_sleuth.utils.converters import utc_now

logger = logging.getLogger(__name__)

CONTROL_CHANNEL = "scraping"


class JobStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


@dataclass
class Job:
    key: JobKey
    status: JobStatus = JobStatus.PENDING
    tab_id: int | None = None
    started_at: datetime = field(default_factory=utc_now)


class ConnectionRegistry:
    """
    Worker channels by tab id, and tab ids by job key.

    Both maps are written only by the supervisor.
    """

    def __init__(self):
        self.ports: dict[int, Port] = {}
        self.tabs: dict[JobKey, int] = {}

    def register_port(self, tab_id: int, port: Port) -> None:
        self.ports[tab_id] = port

    def port_for(self, tab_id: int | None) -> Port | None:
        if tab_id is None:
            return None
        return self.ports.get(tab_id)

    def bind(self, key: JobKey, tab_id: int) -> None:
        self.tabs[key] = tab_id

    def tab_for(self, key: JobKey) -> int | None:
        return self.tabs.get(key)

    def key_for_tab(self, tab_id: int) -> JobKey | None:
        for key, bound in self.tabs.items():
            if bound == tab_id:
                return key
        return None

    def forget_tab(self, tab_id: int | None) -> JobKey | None:
        """Drops every entry referencing ``tab_id``. Returns the job key it was bound to."""
        if tab_id is None:
            return None
        self.ports.pop(tab_id, None)
        key = self.key_for_tab(tab_id)
        if key is not None:
            del self.tabs[key]
        return key

    def clear(self) -> None:
        self.ports.clear()
        self.tabs.clear()

    def is_empty(self) -> bool:
        return not self.ports and not self.tabs


class Supervisor:
    """
    attributes:
        host: Tab host that opens pages and injects workers.
        timings: Waits applied while bringing up a job's tab.
        registry: Live worker channels and job-to-tab bindings.
        jobs: Pending and running jobs. Finished jobs are removed.
        outcomes: Last final status of recent job keys, oldest dropped first
            beyond ``max_outcomes``.
    """

    max_outcomes = 256

    def __init__(self, host: TabHost, timings: Timings | None = None):
        self.host = host
        self.timings = timings or Timings()
        self.registry = ConnectionRegistry()
        self.jobs: dict[JobKey, Job] = {}
        self.outcomes: dict[JobKey, JobStatus] = {}
        self.control: Port | None = None
        self._tasks: set[asyncio.Task] = set()

        host.on_connect.add_listener(self._on_connect)
        host.on_removed.add_listener(self._on_tab_removed)

    # ------------------------------------------------------------------
    # Control channel
    # ------------------------------------------------------------------
    def open_control_channel(self) -> Port:
        """
        Connects a control surface and returns its end of the channel.
        Events are sent to the most recent connection only.
        """
        client_end, server_end = open_channel(CONTROL_CHANNEL)
        self._on_connect(server_end)
        return client_end

    def status(self, key: JobKey) -> JobStatus:
        job = self.jobs.get(key)
        return job.status if job is not None else JobStatus.NONE

    def emit(self, event: Event) -> None:
        control = self.control
        if control is None or not control.connected:
            logger.debug(f"No control channel; dropping '{event.type}'")
            return
        try:
            control.post_message(event.to_wire())
        except ChannelClosedError:
            logger.warning(f"Control channel closed; dropping '{event.type}'")

    def _on_connect(self, port: Port) -> None:
        if port.name == CONTROL_CHANNEL:
            self._attach_control(port)
        elif port.name == WORKER_CHANNEL and port.sender_tab is not None:
            self._attach_worker(port)
        else:
            logger.warning(f"Ignoring unexpected connection {port!r}")

    def _attach_control(self, port: Port) -> None:
        # Events go to the newest surface; older ones can still send commands
        self.control = port
        port.on_message.add_listener(self._on_control_message)
        port.on_disconnect.add_listener(self._on_control_disconnect)
        logger.info("Control surface connected")
        self.emit(ConnectedEvent())

    def _on_control_disconnect(self, port: Port) -> None:
        if port is self.control:
            self.control = None
            logger.info("Control surface disconnected")

    def _on_control_message(self, message: dict[str, Any], port: Port) -> None:
        try:
            command = control_command_adapter.validate_python(message)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed control message: {e.errors()}")
            return

        if isinstance(command, StartCommand):
            self.start(command)
        elif isinstance(command, CancelCommand):
            self._spawn(self.cancel(command.key))
        elif isinstance(command, PingCommand):
            self.emit(PongEvent())

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------
    def start(self, command: StartCommand) -> bool:
        """
        Queues a job. Refused with a ``busy`` event if the same key is
        already pending or running.
        """
        key = command.key
        if self.status(key) in ACTIVE_STATUSES:
            logger.warning(f"[{key}] Already in progress; refusing start")
            self.emit(BusyEvent(keyword=key.keyword, site=key.site))
            return False

        job = Job(key=key)
        self.jobs[key] = job
        logger.info(f"[{key}] Job pending")
        self._spawn(self._bring_up(job))
        return True

    async def _bring_up(self, job: Job) -> None:
        key = job.key
        try:
            profile = get_profile(key.site)
            url = profile.search_url(key.keyword)

            tab_id = await self._open_tab(url)
            if not self._is_current(job):
                await self._close_tab(tab_id)
                return
            job.tab_id = tab_id
            self.registry.bind(key, tab_id)

            await self.host.inject_worker(tab_id)
            await asyncio.sleep(self.timings.settle_delay)
            if not self._is_current(job):
                return

            port = self.registry.port_for(tab_id)
            if port is None:
                raise NavigationError(f"Worker did not attach to tab {tab_id}")
            port.post_message(
                StartScraping(keyword=key.keyword, site=key.site, url=url).to_wire()
            )
            job.status = JobStatus.RUNNING
            logger.info(f"[{key}] Job running in tab {tab_id}")
        except Exception as e:
            if not self._is_current(job):
                logger.debug(f"[{key}] Start fault after job ended: {e!r}")
                return
            logger.error(f"[{key}] Could not start job: {e}")
            tab_id = self._release(key, JobStatus.ERROR)
            self.emit(
                ErrorEvent(keyword=key.keyword, site=key.site, error=str(e), tab_id=tab_id)
            )
            if tab_id is not None:
                await self._close_tab(tab_id)

    async def _open_tab(self, url: str) -> int:
        """
        Opens a background tab and waits for it to finish loading, at most
        ``load_timeout`` seconds. A slow page is not an error.
        """
        loop = asyncio.get_running_loop()
        loaded = loop.create_future()
        completed: set[int] = set()
        target: list[int] = []

        def on_updated(tab_id: int, status: str) -> None:
            if status != "complete":
                return
            completed.add(tab_id)
            if target and target[0] == tab_id and not loaded.done():
                loaded.set_result(None)

        # Subscribed before creation so an immediate load is not missed
        self.host.on_updated.add_listener(on_updated)
        try:
            tab_id = await self.host.create_tab(url, active=False)
            target.append(tab_id)
            if tab_id in completed and not loaded.done():
                loaded.set_result(None)
            try:
                await asyncio.wait_for(loaded, timeout=self.timings.load_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Tab {tab_id} still loading after {self.timings.load_timeout}s; continuing")
            return tab_id
        finally:
            self.host.on_updated.remove_listener(on_updated)

    async def cancel(self, key: JobKey) -> None:
        """
        Stops a job and closes its tab, then reports exactly one
        ``cancelled`` event. A key with no pending or running job is ignored,
        so a late cancel never follows the job's final event.
        """
        job = self.jobs.get(key)
        tab_id = self.registry.tab_for(key)
        if job is None and tab_id is None:
            logger.debug(f"[{key}] Cancel for a job that is not in flight; ignoring")
            return
        if tab_id is None and job is not None:
            tab_id = job.tab_id

        port = self.registry.port_for(tab_id)
        if port is not None:
            try:
                port.post_message(CancelScraping().to_wire())
            except ChannelClosedError:
                logger.debug(f"[{key}] Worker channel already closed")

        self._release(key, JobStatus.CANCELLED)
        if tab_id is not None:
            await self._close_tab(tab_id)
        logger.info(f"[{key}] Job cancelled")
        self.emit(CancelledEvent(keyword=key.keyword, site=key.site, tab_id=tab_id))

    def _release(self, key: JobKey, outcome: JobStatus) -> int | None:
        """Removes the job and its registry entries. Returns its tab id."""
        job = self.jobs.pop(key, None)
        tab_id = self.registry.tab_for(key)
        if tab_id is None and job is not None:
            tab_id = job.tab_id
        self.registry.forget_tab(tab_id)
        self.registry.tabs.pop(key, None)
        if job is not None:
            job.status = outcome
            self.outcomes.pop(key, None)
            self.outcomes[key] = outcome
            while len(self.outcomes) > self.max_outcomes:
                del self.outcomes[next(iter(self.outcomes))]
        return tab_id

    async def _close_tab(self, tab_id: int) -> None:
        try:
            await self.host.remove_tab(tab_id)
        except Exception as e:
            logger.warning(f"Could not close tab {tab_id}: {e}")

    def _is_current(self, job: Job) -> bool:
        return self.jobs.get(job.key) is job

    # ------------------------------------------------------------------
    # Worker channels
    # ------------------------------------------------------------------
    def _attach_worker(self, port: Port) -> None:
        tab_id = port.sender_tab
        self.registry.register_port(tab_id, port)
        port.on_message.add_listener(self._on_worker_message)
        port.on_disconnect.add_listener(self._on_worker_disconnect)
        logger.debug(f"Worker connected from tab {tab_id}")

    def _on_worker_message(self, message: dict[str, Any], port: Port) -> None:
        tab_id = port.sender_tab
        if self.registry.port_for(tab_id) is not port:
            logger.debug(f"Dropping message from unregistered tab {tab_id}")
            return
        try:
            event = worker_event_adapter.validate_python(message)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed worker message from tab {tab_id}: {e.errors()}")
            return

        key = event.key
        if self.registry.tab_for(key) != tab_id:
            logger.debug(f"Dropping '{event.type}' for {key} from unbound tab {tab_id}")
            return

        job = self.jobs.get(key)
        if event.type == "progress" and job is not None:
            job.status = JobStatus.RUNNING

        self.emit(event.model_copy(update={"tab_id": tab_id}))

        if event.type in TERMINAL_EVENT_TYPES:
            outcome = {
                "result": JobStatus.DONE,
                "error": JobStatus.ERROR,
                "cancelled": JobStatus.CANCELLED,
            }[event.type]
            logger.info(f"[{key}] Job finished: {outcome.value}")
            self._release(key, outcome)
            self._spawn(self._close_tab(tab_id))

    def _on_worker_disconnect(self, port: Port) -> None:
        tab_id = port.sender_tab
        if self.registry.port_for(tab_id) is not port:
            return
        self._drop_tab(tab_id, "worker channel closed")

    def _on_tab_removed(self, tab_id: int) -> None:
        self._drop_tab(tab_id, "tab closed")

    def _drop_tab(self, tab_id: int, reason: str) -> None:
        key = self.registry.forget_tab(tab_id)
        if key is None:
            return
        job = self.jobs.pop(key, None)
        if job is not None:
            logger.info(f"[{key}] Forgetting job: {reason}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Waits for every background start, cancel and close task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

        tab_ids = set(self.registry.tabs.values()) | set(self.registry.ports)
        tab_ids |= {job.tab_id for job in self.jobs.values() if job.tab_id is not None}
        self.jobs.clear()
        self.registry.clear()
        for tab_id in sorted(tab_ids):
            await self._close_tab(tab_id)

        if self.control is not None:
            self.control.disconnect()
            self.control = None
        logger.info("Supervisor closed")
