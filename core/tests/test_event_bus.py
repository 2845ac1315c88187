"""
Tests for the run event bus.
"""

import asyncio
import json

import pytest

from flowrun.runtime.event_bus import EventBus, EventType, RunEvent


@pytest.mark.asyncio
async def test_subscribe_filters_by_type_and_node():
    bus = EventBus()
    received = []

    async def handler(event: RunEvent):
        received.append(event)

    bus.subscribe([EventType.NODE_FAILED], handler, filter_node="b")

    await bus.emit_node_ready("run-1", "b")
    await bus.publish(RunEvent(type=EventType.NODE_FAILED, run_id="run-1", node_id="a"))
    await bus.publish(RunEvent(type=EventType.NODE_FAILED, run_id="run-1", node_id="b"))

    assert [(e.type, e.node_id) for e in received] == [(EventType.NODE_FAILED, "b")]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    sub_id = bus.subscribe([EventType.NODE_READY], handler)
    assert bus.unsubscribe(sub_id) is True
    assert bus.unsubscribe(sub_id) is False

    await bus.emit_node_ready("run-1", "a")

    assert received == []


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_publish():
    bus = EventBus()
    received = []

    async def broken(event):
        raise RuntimeError("boom")

    async def ok(event):
        received.append(event)

    bus.subscribe([EventType.NODE_READY], broken)
    bus.subscribe([EventType.NODE_READY], ok)

    await bus.emit_node_ready("run-1", "a")

    assert len(received) == 1


@pytest.mark.asyncio
async def test_history_most_recent_first_with_limit():
    bus = EventBus(max_history=3)
    for node_id in ["a", "b", "c", "d"]:
        await bus.emit_node_ready("run-1", node_id)

    history = bus.get_history(run_id="run-1")

    assert [e.node_id for e in history] == ["d", "c", "b"]
    assert bus.get_stats()["events_by_type"] == {"node_ready": 3}


@pytest.mark.asyncio
async def test_wait_for_returns_event_or_none_on_timeout():
    bus = EventBus()

    async def publish_later():
        await asyncio.sleep(0.01)
        await bus.emit_node_ready("run-1", "a")

    task = asyncio.create_task(publish_later())
    event = await bus.wait_for(EventType.NODE_READY, run_id="run-1", timeout=1)
    await task

    assert event is not None and event.node_id == "a"
    assert await bus.wait_for(EventType.RUN_COMPLETED, timeout=0.01) is None


@pytest.mark.asyncio
async def test_stream_replays_and_ends_on_terminal_event():
    bus = EventBus()
    await bus.emit_run_started("run-1", "g", 1)
    await bus.emit_node_ready("run-1", "a")
    await bus.emit_node_ready("run-2", "x")

    async def finish():
        await asyncio.sleep(0.01)
        await bus.publish(RunEvent(type=EventType.RUN_COMPLETED, run_id="run-1"))

    task = asyncio.create_task(finish())
    events = [e async for e in bus.stream(run_id="run-1", replay=True)]
    await task

    assert [e.type for e in events] == [
        EventType.RUN_STARTED,
        EventType.NODE_READY,
        EventType.RUN_COMPLETED,
    ]
    assert bus.get_stats()["subscriptions"] == 0


@pytest.mark.asyncio
async def test_stream_type_filter_still_ends_on_terminal_event():
    bus = EventBus()
    await bus.emit_node_ready("run-1", "a")
    await bus.publish(RunEvent(type=EventType.RUN_FAILED, run_id="run-1"))

    events = [
        e async for e in bus.stream(run_id="run-1", event_types=[EventType.NODE_READY], replay=True)
    ]

    assert [e.type for e in events] == [EventType.NODE_READY]


def test_event_to_dict_is_json_serializable():
    event = RunEvent(
        type=EventType.NODE_RETRYING,
        run_id="run-1",
        node_id="a",
        attempt=1,
        data={"delay": 0.5, "error_kind": "timeout"},
    )

    payload = json.loads(json.dumps(event.to_dict()))

    assert payload["type"] == "node_retrying"
    assert payload["data"]["error_kind"] == "timeout"
    assert payload["started_at"] is None
