"""
In-process message channels between the control surface, the supervisor and
the per-tab workers.

A Port is one end of a duplex channel. Messages are plain JSON-compatible
dicts, delivered asynchronously and in order on the running event loop.
Disconnecting one end notifies only the other end.
"""
import asyncio
import copy
import inspect
import logging
from collections.abc import Callable
from typing import Any

from keyword_sleuth.errors import ChannelClosedError

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class EventHook:
    """
    Ordered set of listeners for one kind of event.

    Listeners may be plain callables or coroutine functions; coroutines are run
    as tasks that the hook keeps referenced until they finish.
    """

    def __init__(self, name: str = "event"):
        self.name = name
        self._listeners: list[Listener] = []
        self._tasks: set[asyncio.Task] = set()

    def add_listener(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def has_listeners(self) -> bool:
        return bool(self._listeners)

    def emit(self, *args: Any) -> None:
        # Snapshot: listeners may unsubscribe themselves while running
        for listener in list(self._listeners):
            try:
                result = listener(*args)
            except Exception:
                logger.exception(f"Listener for '{self.name}' failed")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async listener for '{self.name}' failed: {exc!r}")

    async def drain(self) -> None:
        """Waits for every async listener task started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class Port:
    """
    One end of a duplex channel.

    attributes:
        name: Channel role, "scraping" for the control surface and "content" for workers.
        sender_tab: Tab id the channel was opened from, if any.
    """

    def __init__(self, name: str, sender_tab: int | None = None):
        self.name = name
        self.sender_tab = sender_tab
        self.on_message = EventHook(f"{name}.message")
        self.on_disconnect = EventHook(f"{name}.disconnect")
        self._peer: "Port | None" = None
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def post_message(self, message: dict[str, Any]) -> None:
        """
        Queues a message for the other end.

        Raises ChannelClosedError if either end has disconnected.
        """
        peer = self._peer
        if not self._connected or peer is None or not peer._connected:
            raise ChannelClosedError(f"Channel '{self.name}' is disconnected")

        payload = copy.deepcopy(message)
        asyncio.get_running_loop().call_soon(peer._deliver, payload)

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        peer = self._peer
        if peer is None or not peer._connected:
            return
        # Queued behind messages already in flight, so the peer sees them first
        try:
            asyncio.get_running_loop().call_soon(peer._close_from_peer)
        except RuntimeError:
            # No loop running (interpreter shutdown); notify inline
            peer._close_from_peer()

    def _close_from_peer(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.on_disconnect.emit(self)

    def _deliver(self, message: dict[str, Any]) -> None:
        if not self._connected:
            logger.debug(f"Dropping message on closed channel '{self.name}'")
            return
        self.on_message.emit(message, self)

    def __repr__(self) -> str:
        state = "open" if self._connected else "closed"
        return f"Port(name={self.name!r}, sender_tab={self.sender_tab}, {state})"


def open_channel(name: str, sender_tab: int | None = None) -> tuple[Port, Port]:
    """
    Creates a connected pair of ports: (opener end, receiver end).

    Both ends carry the same name and sender_tab.
    """
    opener = Port(name, sender_tab)
    receiver = Port(name, sender_tab)
    opener._peer = receiver
    receiver._peer = opener
    return opener, receiver
