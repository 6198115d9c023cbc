import asyncio

import pytest

from mcpbridge.core.events import EventBus


@pytest.mark.asyncio
async def test_subscribe_emit_and_wildcard():
    bus = EventBus()
    seen = []

    async def on_any(event):
        seen.append(("any", event.name))

    bus.subscribe("restarted", lambda event: seen.append(("restarted", event.data["server_name"])))
    bus.subscribe("*", on_any)

    await bus.emit("restarted", {"server_name": "fs"}, wait=True)
    await bus.emit("healthy", {"server_name": "fs"}, wait=True)

    assert seen == [("restarted", "fs"), ("any", "restarted"), ("any", "healthy")]
    assert [e.name for e in bus.get_history()] == ["restarted", "healthy"]
    assert bus.handler_count() == 2


@pytest.mark.asyncio
async def test_priority_unsubscribe_and_failing_handler():
    bus = EventBus(max_history=1)
    order = []

    def broken(event):
        raise RuntimeError("handler bug")

    bus.subscribe("tick", lambda e: order.append("low"))
    high = bus.subscribe("tick", lambda e: order.append("high"), priority=10)
    bus.subscribe("tick", broken)

    await bus.emit("tick", {}, wait=True)
    assert order == ["high", "low"]

    high.unsubscribe()
    high.unsubscribe()
    assert not high.active
    assert bus.handler_count("tick") == 2

    await bus.emit("tick", {})
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert order == ["high", "low", "low"]
    assert len(bus.get_history()) == 1
