"""Wires rooms, monitors, the event bus and the conversion queue together."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Iterable

from autosplit.bililive_api import ApiError, LiveStatusApi, RoomNotFound
from autosplit.config import ConfigPersistenceError, ConfigStore
from autosplit.conversion import ConversionConflict, ConversionQueue, ConversionTask
from autosplit.disk_usage import DiskUsagePoller, DiskUsageReport
from autosplit.events import Event, EventBus, EventKind
from autosplit.monitor import Monitor
from autosplit.notifications import NotificationDispatcher, build_dispatcher, live_message
from autosplit.rooms import RoomConflict, RoomRegistry, RoomState
from autosplit.title_log import TitleHistory

log = logging.getLogger("autosplit.orchestrator")

MonitorFactory = Callable[[RoomState], Monitor]

ROOM_EVENT_KINDS = (
    EventKind.LOG,
    EventKind.NOTIFY,
    EventKind.TITLE_CHANGED,
    EventKind.RECORD_COMPLETED,
)


class Orchestrator:
    """Owns the room set and applies policy to the events rooms raise.

    Every handler runs on the EventBus dispatcher task. Room add/remove is
    serialized by ``_manage_lock`` so a concurrent add of the same id cannot
    slip past the duplicate check while the API lookup is in flight.
    """

    def __init__(
        self,
        api: LiveStatusApi,
        store: ConfigStore,
        *,
        bus: EventBus | None = None,
        queue: ConversionQueue | None = None,
        titles: TitleHistory | None = None,
        notifier: NotificationDispatcher | None = None,
        disk_poller: DiskUsagePoller | None = None,
        monitor_factory: MonitorFactory | None = None,
    ) -> None:
        cfg = store.cfg()
        self.api = api
        self.store = store
        self.bus = bus or EventBus()
        self.queue = queue or ConversionQueue.from_cfg(cfg, bus=self.bus)
        self.rooms = RoomRegistry()
        paths = store.section("paths")
        self.titles = titles or TitleHistory(
            paths.get("title_log_dir") or store.record_dir / "titles"
        )
        self.notifier = notifier if notifier is not None else build_dispatcher(cfg.get("notifications"))
        interval = float(store.section("monitor").get("disk_usage_interval_sec", 1.0) or 1.0)
        self.disk_poller = disk_poller or DiskUsagePoller(store.record_dir, interval=interval)
        self._monitor_factory = monitor_factory or (
            lambda room: Monitor.from_cfg(room, self.api, self.bus, self.store.cfg())
        )
        max_entries = int(store.section("logging").get("max_entries", 1000) or 1000)
        self.log_history: Deque[str] = deque(maxlen=max(1, max_entries))
        self._manage_lock = asyncio.Lock()
        self._closing = False

    # --- lifecycle ---
    async def start(self) -> None:
        self._closing = False
        self.bus.start()
        self.bus.subscribe(None, EventKind.LOG, self._on_log)
        self.bus.subscribe(None, EventKind.TASK_FINISHED, self._on_task_finished)
        self.disk_poller.start()
        await self.init_rooms()

    async def init_rooms(self) -> int:
        """Create and start a monitor for every configured room."""
        started = 0
        for entry in self.store.rooms():
            try:
                room = RoomState.from_config(entry)
                self.rooms.add(room)
            except (ValueError, RoomConflict) as exc:
                log.warning("skipping configured room %r: %s", entry, exc)
                continue
            self._subscribe(room)
            self._start_monitor(room)
            started += 1
        log.info("initialised %d room(s)", started)
        return started

    async def shutdown(self) -> None:
        """Stop everything; afterwards no monitor, capture or conversion is active."""
        self._closing = True
        await self.stop_all_monitors()
        # Flush completions raised by the recorders we just stopped.
        await self.bus.drain()
        await self.queue.shutdown()
        await self.disk_poller.stop()
        await self.bus.stop()
        if self.notifier is not None:
            await asyncio.to_thread(self.notifier.close)
        log.info("shutdown complete")

    # --- room management ---
    def _subscribe(self, room: RoomState) -> None:
        handlers = {
            EventKind.LOG: self._on_log,
            EventKind.NOTIFY: self._on_notify,
            EventKind.TITLE_CHANGED: self._on_title_changed,
            EventKind.RECORD_COMPLETED: self._on_record_completed,
        }
        for kind in ROOM_EVENT_KINDS:
            self.bus.subscribe(room, kind, handlers[kind])

    def _start_monitor(self, room: RoomState) -> Monitor:
        if room.monitor is not None and room.monitor.running:
            return room.monitor
        monitor = self._monitor_factory(room)
        monitor.start()
        return monitor

    def _save_rooms(self) -> None:
        try:
            self.store.save_rooms(self.rooms.to_config())
        except ConfigPersistenceError as exc:
            log.error("unable to persist room list: %s", exc)
            self.add_log(f"could not save room list: {exc}")

    async def add_room(self, room_id: int) -> bool:
        async with self._manage_lock:
            existing = self.rooms.lookup(room_id)
            if existing is not None:
                self.add_log(f"room {room_id} is already managed as {existing.describe()}")
                return False
            try:
                info = await self.api.get_room_info(room_id)
            except RoomNotFound as exc:
                self.add_log(f"room {room_id} not found: {exc}")
                return False
            except ApiError as exc:
                log.warning("room lookup failed room=%s: %s", room_id, exc)
                self.add_log(f"room {room_id} lookup failed: {exc}")
                return False
            try:
                room = self.rooms.add(RoomState.from_info(info))
            except (ValueError, RoomConflict) as exc:
                self.add_log(f"room {room_id} rejected: {exc}")
                return False
            self._subscribe(room)
            self._start_monitor(room)
            self._save_rooms()
        self.add_log(f"room {room.describe()} added")
        return True

    async def remove_room(self, room_ids: Iterable[int]) -> int:
        removed = 0
        async with self._manage_lock:
            for room_id in room_ids:
                room = self.rooms.lookup(room_id)
                if room is None:
                    continue
                if room.monitor is not None:
                    await room.monitor.stop()
                self.bus.unsubscribe_room(room)
                self.rooms.remove(room.room_id)
                removed += 1
                self.add_log(f"room {room.describe()} removed")
            if removed:
                self._save_rooms()
        return removed

    def manual_refresh(self, room_ids: Iterable[int]) -> int:
        triggered = 0
        for room_id in room_ids:
            room = self.rooms.lookup(room_id)
            if room is None or room.monitor is None:
                continue
            room.monitor.trigger_check()
            triggered += 1
        return triggered

    async def stop_all_monitors(self) -> None:
        monitors = [room.monitor for room in self.rooms.snapshot() if room.monitor is not None]
        results = await asyncio.gather(
            *(monitor.stop() for monitor in monitors), return_exceptions=True
        )
        for monitor, result in zip(monitors, results):
            if isinstance(result, BaseException):
                log.error("monitor stop failed room=%s: %r", monitor.room.room_id, result)

    # --- conversions ---
    def add_convert_task(
        self,
        input_path: str | Path,
        output_path: str | Path,
        *,
        delete_source: bool = False,
        delete_to_recycle: bool = True,
        fix_timestamp: bool = False,
    ) -> ConversionTask | None:
        try:
            task = self.queue.submit_convert(
                input_path,
                output_path,
                delete_source=delete_source,
                delete_to_recycle=delete_to_recycle,
                fix_timestamp=fix_timestamp,
            )
        except ConversionConflict as exc:
            self.add_log(f"conversion of {input_path} rejected: {exc}")
            return None
        except Exception:
            log.exception("unable to queue conversion input=%s output=%s", input_path, output_path)
            return None
        self.add_log(f"conversion queued: {Path(input_path).name} -> {Path(output_path).name}")
        return task

    def add_split_task(
        self, input_path: str | Path, output_path: str | Path, start_time: str, duration: str
    ) -> ConversionTask | None:
        try:
            task = self.queue.submit_split(input_path, output_path, start_time, duration)
        except ConversionConflict as exc:
            self.add_log(f"split of {input_path} rejected: {exc}")
            return None
        except Exception:
            log.exception("unable to queue split input=%s output=%s", input_path, output_path)
            return None
        self.add_log(f"split queued: {Path(input_path).name} [{start_time} +{duration}]")
        return task

    def stop_all_conversions(self) -> None:
        self.queue.stop_all()

    def disk_status(self) -> DiskUsageReport:
        return self.disk_poller.latest

    # --- event handlers ---
    def add_log(self, message: str) -> None:
        stamp = time.strftime("%H:%M:%S")
        self.log_history.append(f"{stamp} {message}")
        log.info("%s", message)

    def _on_log(self, event: Event) -> None:
        self.add_log(str(event.payload))

    def _on_notify(self, event: Event) -> None:
        room = event.room
        if room is None:
            return
        title = str(event.payload or room.title)
        self.add_log(f"{live_message(room.display_name)} {title}")
        if self.notifier is not None:
            self.notifier.notify_live(room.room_id, room.display_name, title)

    def _on_title_changed(self, event: Event) -> None:
        if event.room is None:
            return
        try:
            self.titles.append(event.room.room_id, str(event.payload))
        except OSError as exc:
            log.error("unable to write title history room=%s: %s", event.room.room_id, exc)

    def _on_record_completed(self, event: Event) -> None:
        path = Path(str(event.payload))
        room_id = event.room_id
        if not path.is_file():
            log.warning("recording vanished room=%s path=%s", room_id, path)
            self.add_log(f"[{room_id}] recording not found: {path}")
            return
        conv = self.store.section("conversion")
        if not conv.get("auto_convert"):
            return
        if self._closing:
            log.info("shutting down; not converting %s", path)
            return
        extension = str(conv.get("target_extension") or "mp4").lstrip(".")
        output = path.with_suffix(f".{extension}")
        if output == path:
            log.warning("recording already has target extension, skipping conversion: %s", path)
            return
        self.add_convert_task(
            path,
            output,
            delete_source=bool(conv.get("delete_after_convert", False)),
            delete_to_recycle=bool(conv.get("delete_to_recycle", True)),
            fix_timestamp=bool(conv.get("fix_timestamp", False)),
        )

    def _on_task_finished(self, event: Event) -> None:
        snapshot: dict[str, Any] = event.payload or {}
        message = f"{snapshot.get('kind')} task {snapshot.get('id')} {snapshot.get('state')}: {snapshot.get('output')}"
        if snapshot.get("error"):
            message = f"{message} ({snapshot['error']})"
        self.add_log(message)
