import asyncio

import pytest

from fakes import idle
from keyword_sleuth.channels import EventHook, open_channel
from keyword_sleuth.errors import ChannelClosedError


def test_messages_arrive_in_order_as_copies() -> None:
    async def run():
        a, b = open_channel("content", sender_tab=3)
        received = []
        b.on_message.add_listener(lambda message, port: received.append((message, port)))

        payload = {"n": 1, "items": [1]}
        a.post_message(payload)
        payload["items"].append(2)
        a.post_message({"n": 2})
        delivered_immediately = list(received)
        await idle()
        return received, delivered_immediately, b

    received, delivered_immediately, b = asyncio.run(run())

    assert delivered_immediately == []
    assert [m["n"] for m, _ in received] == [1, 2]
    assert received[0][0]["items"] == [1]
    assert received[0][1] is b
    assert b.sender_tab == 3


def test_disconnect_notifies_only_the_peer() -> None:
    async def run():
        a, b = open_channel("scraping")
        seen = []
        a.on_disconnect.add_listener(lambda port: seen.append("a"))
        b.on_disconnect.add_listener(lambda port: seen.append("b"))
        a.disconnect()
        await idle()
        return seen, a, b

    seen, a, b = asyncio.run(run())

    assert seen == ["b"]
    assert not a.connected
    assert not b.connected


def test_messages_in_flight_arrive_before_disconnect() -> None:
    async def run():
        a, b = open_channel("content")
        log = []
        b.on_message.add_listener(lambda message, port: log.append(message["n"]))
        b.on_disconnect.add_listener(lambda port: log.append("closed"))
        a.post_message({"n": 1})
        a.disconnect()
        await idle()
        return log

    assert asyncio.run(run()) == [1, "closed"]


def test_post_on_closed_channel_raises() -> None:
    async def run():
        a, b = open_channel("content")
        b.disconnect()
        await idle()
        with pytest.raises(ChannelClosedError):
            a.post_message({"n": 1})
        with pytest.raises(ChannelClosedError):
            b.post_message({"n": 1})

    asyncio.run(run())


def test_event_hook_runs_async_listeners_and_survives_failures() -> None:
    async def run():
        hook = EventHook("test")
        calls = []

        def broken(value):
            raise RuntimeError("boom")

        async def slow(value):
            await asyncio.sleep(0)
            calls.append(("slow", value))

        async def failing(value):
            raise RuntimeError("async boom")

        hook.add_listener(broken)
        hook.add_listener(slow)
        hook.add_listener(failing)
        hook.add_listener(lambda value: calls.append(("sync", value)))
        hook.emit(7)
        await hook.drain()
        return calls

    assert asyncio.run(run()) == [("sync", 7), ("slow", 7)]


def test_listener_can_unsubscribe_itself() -> None:
    hook = EventHook()
    calls = []

    def once(value):
        calls.append(value)
        hook.remove_listener(once)

    hook.add_listener(once)
    hook.emit(1)
    hook.emit(2)

    assert calls == [1]
    assert not hook.has_listeners()
