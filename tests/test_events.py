from __future__ import annotations

import asyncio
import threading

import pytest

from autosplit.events import EventBus, EventKind
from autosplit.rooms import RoomState


def test_subscribe_is_idempotent_per_room_and_kind() -> None:
    bus = EventBus()
    room = RoomState(1)

    assert bus.subscribe(room, EventKind.LOG, lambda e: None) is True
    assert bus.subscribe(room, EventKind.LOG, lambda e: None) is False
    assert bus.subscribe(room, EventKind.NOTIFY, lambda e: None) is True
    assert bus.subscription_count() == 2
    assert bus.unsubscribe_room(room) == 2
    assert not bus.is_subscribed(room, EventKind.LOG)


@pytest.mark.asyncio
async def test_events_delivered_in_order_and_errors_isolated(caplog) -> None:
    bus = EventBus()
    bus.start()
    room = RoomState(1)
    seen: list[str] = []

    def on_log(event):
        if event.payload == "bad":
            raise RuntimeError("handler exploded")
        seen.append(event.payload)

    async def on_notify(event):
        await asyncio.sleep(0)
        seen.append(f"notify:{event.payload}")

    bus.subscribe(room, EventKind.LOG, on_log)
    bus.subscribe(room, EventKind.NOTIFY, on_notify)

    for payload in ("a", "bad", "b"):
        bus.publish(EventKind.LOG, room, payload)
    bus.publish(EventKind.NOTIFY, room, "live")
    await bus.drain()
    await bus.stop()

    assert seen == ["a", "b", "notify:live"]
    assert "event handler failed" in caplog.text


@pytest.mark.asyncio
async def test_events_for_removed_room_are_dropped() -> None:
    bus = EventBus()
    bus.start()
    room = RoomState(1)
    seen = []
    bus.subscribe(room, EventKind.LOG, seen.append)

    bus.publish(EventKind.LOG, room, "queued before removal")
    bus.unsubscribe_room(room)
    await bus.drain()
    await bus.stop()

    assert seen == []
    assert [e.payload for e in bus.history_snapshot()] == ["queued before removal"]


@pytest.mark.asyncio
async def test_publish_from_worker_thread() -> None:
    bus = EventBus()
    bus.start()
    received = asyncio.Event()
    bus.subscribe(None, EventKind.LOG, lambda e: received.set())

    thread = threading.Thread(target=bus.publish, args=(EventKind.LOG, None, "from thread"))
    thread.start()
    thread.join()

    await asyncio.wait_for(received.wait(), timeout=2)
    await bus.stop()


@pytest.mark.asyncio
async def test_readded_room_does_not_get_stale_events() -> None:
    bus = EventBus()
    bus.start()
    old_room = RoomState(1)
    new_room = RoomState(1)
    seen = []
    bus.subscribe(old_room, EventKind.LOG, lambda e: seen.append(("old", e.payload)))

    bus.publish(EventKind.LOG, old_room, "from old room")
    bus.unsubscribe_room(old_room)
    bus.subscribe(new_room, EventKind.LOG, lambda e: seen.append(("new", e.payload)))
    bus.publish(EventKind.LOG, new_room, "from new room")
    await bus.drain()
    await bus.stop()

    assert seen == [("new", "from new room")]
