"""Tests for the in-process event bus."""

import asyncio

import pytest

from src.collector.bus import EventBus


class TestPublish:
    def test_handlers_receive_payload_in_subscription_order(self):
        calls = []

        async def scenario():
            bus = EventBus()
            bus.subscribe("t", lambda p: calls.append(("first", p)))

            async def second(p):
                calls.append(("second", p))

            bus.subscribe("t", second)
            assert bus.publish("t", 42) == 2
            await bus.join()

        asyncio.run(scenario())
        assert calls == [("first", 42), ("second", 42)]

    def test_publish_returns_before_handlers_finish(self):
        async def scenario():
            bus = EventBus()
            release = asyncio.Event()
            done = []

            async def slow(payload):
                await release.wait()
                done.append(payload)

            bus.subscribe("t", slow)
            bus.publish("t", "evt")
            assert done == []
            assert bus.pending == 1
            release.set()
            await bus.join()
            return done

        assert asyncio.run(scenario()) == ["evt"]

    def test_failing_handler_does_not_affect_others(self):
        received = []

        async def scenario():
            bus = EventBus()

            async def broken(payload):
                raise RuntimeError("broker down")

            bus.subscribe("t", broken)
            bus.subscribe("t", received.append)
            bus.publish("t", "evt")
            await bus.join()
            assert bus.pending == 0

        asyncio.run(scenario())
        assert received == ["evt"]

    def test_topics_are_independent(self):
        received = []

        async def scenario():
            bus = EventBus()
            bus.subscribe("a", lambda p: received.append(("a", p)))
            bus.subscribe("b", lambda p: received.append(("b", p)))
            bus.publish("b", 1)
            await bus.join()

        asyncio.run(scenario())
        assert received == [("b", 1)]

    def test_no_subscribers(self):
        async def scenario():
            return EventBus().publish("nobody", {})

        assert asyncio.run(scenario()) == 0

    def test_publish_outside_event_loop_raises(self):
        bus = EventBus()
        bus.subscribe("t", lambda p: None)
        with pytest.raises(RuntimeError):
            bus.publish("t", 1)
