"""In-process event bus between monitors/recorders and the orchestrator."""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, Tuple, Union

if TYPE_CHECKING:  # pragma: no cover
    from autosplit.rooms import RoomState

log = logging.getLogger("autosplit.events")


class EventKind(enum.Enum):
    LOG = "log"
    NOTIFY = "notify"
    TITLE_CHANGED = "title_changed"
    RECORD_COMPLETED = "record_completed"
    TASK_FINISHED = "task_finished"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    room: "RoomState | None"
    payload: Any
    seq: int = 0
    timestamp: float = field(default_factory=time.time)

    @property
    def room_id(self) -> int | None:
        return self.room.room_id if self.room is not None else None


Handler = Callable[[Event], Union[None, Awaitable[None]]]
# Room-less events (conversion tasks, system messages) use key 0.
SYSTEM_KEY = 0


class EventBus:
    """Fan-out of room events to subscribed handlers.

    Subscriptions are a mapping keyed by ``(room_id, kind)``: registering the
    same key twice replaces nothing and reports ``False``, so re-wiring a
    room never produces duplicate handling. ``publish`` only enqueues; a
    single dispatcher task delivers events in emission order, so a slow
    handler never blocks the monitor or recorder that raised the event.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        history_limit: int = 256,
    ) -> None:
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._loop: asyncio.AbstractEventLoop | None = loop
        self._history: Deque[Event] = deque(maxlen=history_limit)
        self._subscriptions: Dict[Tuple[int, EventKind], Tuple["RoomState | None", Handler]] = {}
        self._queue: asyncio.Queue[Event | None] | None = None
        self._dispatcher: asyncio.Task | None = None
        self._seq = 0
        self._lock = threading.Lock()

    # --- subscriptions ---
    def subscribe(self, room: "RoomState | None", kind: EventKind, handler: Handler) -> bool:
        key = (room.room_id if room is not None else SYSTEM_KEY, kind)
        with self._lock:
            if key in self._subscriptions:
                return False
            self._subscriptions[key] = (room, handler)
        return True

    def unsubscribe_room(self, room: "RoomState") -> int:
        with self._lock:
            keys = [key for key in self._subscriptions if key[0] == room.room_id]
            for key in keys:
                del self._subscriptions[key]
        return len(keys)

    def is_subscribed(self, room: "RoomState | None", kind: EventKind) -> bool:
        key = (room.room_id if room is not None else SYSTEM_KEY, kind)
        with self._lock:
            return key in self._subscriptions

    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # --- lifecycle ---
    def start(self) -> None:
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        loop = asyncio.get_running_loop()
        with self._lock:
            self._loop = loop
            self._queue = asyncio.Queue()
        self._dispatcher = loop.create_task(self._dispatch_loop(), name="event-bus")

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the dispatcher."""
        task = self._dispatcher
        queue = self._queue
        if task is None or queue is None:
            return
        queue.put_nowait(None)
        try:
            await task
        finally:
            self._dispatcher = None

    async def drain(self) -> None:
        """Wait until every event published so far has been handled."""
        queue = self._queue
        if queue is None:
            return
        await queue.join()

    # --- publishing ---
    def publish(self, kind: EventKind, room: "RoomState | None", payload: Any = None) -> Event:
        with self._lock:
            self._seq += 1
            event = Event(kind=kind, room=room, payload=payload, seq=self._seq)
            self._history.append(event)
            loop = self._loop
            queue = self._queue

        if queue is None or loop is None:
            log.debug("event bus not started; dropping %s", kind.value)
            return event

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(event)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, event)
        return event

    def history_snapshot(self) -> list[Event]:
        with self._lock:
            return list(self._history)

    # --- delivery ---
    def _handler_for(self, event: Event) -> Handler | None:
        key = (event.room.room_id if event.room is not None else SYSTEM_KEY, event.kind)
        with self._lock:
            entry = self._subscriptions.get(key)
        if entry is None:
            return None
        room, handler = entry
        # A room re-added under the same id is a new RoomState; events
        # queued by the old one are not delivered to it.
        if room is not event.room:
            return None
        return handler

    async def _dispatch_loop(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                if event is None:
                    return
                await self._deliver(event)
            finally:
                queue.task_done()

    async def _deliver(self, event: Event) -> None:
        # Looked up at delivery time: events from a room that was removed
        # after publishing are dropped here.
        handler = self._handler_for(event)
        if handler is None:
            return
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception(
                "event handler failed kind=%s room=%s", event.kind.value, event.room_id
            )
