"""Tests for the event bus."""

import pytest

from hostplane.events.bus import Event, EventBus


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("service.started", handler)
    await bus.emit("service.started", {"service_id": "s1"}, source="test")

    assert len(received) == 1
    assert received[0].topic == "service.started"
    assert received[0].data["service_id"] == "s1"
    assert received[0].source == "test"


@pytest.mark.asyncio
async def test_wildcard_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("site.*", handler)
    await bus.emit("site.created")
    await bus.emit("site.deleted")
    await bus.emit("alert.created")  # should NOT match

    assert [e.topic for e in received] == ["site.created", "site.deleted"]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others():
    bus = EventBus()
    received = []

    async def broken(event: Event):
        raise RuntimeError("subscriber bug")

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("alert.*", broken)
    bus.subscribe("alert.*", handler)
    event = await bus.emit("alert.created", {"id": "a1"})

    assert event.topic == "alert.created"
    assert len(received) == 1


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("stats.*", handler)
    bus.unsubscribe("stats.*", handler)
    await bus.emit("stats.server")

    assert received == []


@pytest.mark.asyncio
async def test_history_is_newest_first_and_filtered():
    bus = EventBus(history_limit=3)
    for topic in ("site.created", "service.created", "service.started", "service.stopped"):
        await bus.emit(topic)

    assert [e.topic for e in bus.history()] == [
        "service.stopped", "service.started", "service.created",
    ]
    assert [e.topic for e in bus.history("service.st*", limit=1)] == ["service.stopped"]
