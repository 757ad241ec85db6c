"""Per-room live-status polling state machine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping

from autosplit.bililive_api import ApiError, LiveStatusApi, RoomInfo, RoomNotFound, TransientApiError
from autosplit.events import EventBus, EventKind
from autosplit.recorder import Recorder
from autosplit.rooms import MonitorPhase, RoomState, TriggerType

log = logging.getLogger("autosplit.monitor")

MIN_POLL_INTERVAL = 1.0


class Monitor:
    """Polls one room and drives its Recorder.

    The loop checks once at startup, then on every ``poll_interval`` tick or
    as soon as ``trigger_check()`` is called. The part of ``check`` that
    mutates the room runs under ``room.lock``, so overlapping checks (timer
    plus manual) cannot both act on the same offline->live transition.
    """

    def __init__(
        self,
        room: RoomState,
        api: LiveStatusApi,
        bus: EventBus,
        recorder: Recorder,
        *,
        poll_interval: float = 30.0,
    ) -> None:
        self.room = room
        self.api = api
        self.bus = bus
        self.recorder = recorder
        self.poll_interval = max(MIN_POLL_INTERVAL, float(poll_interval))
        self._task: asyncio.Task | None = None
        self._wake = asyncio.Event()
        self._stopped = False

    @classmethod
    def from_cfg(
        cls,
        room: RoomState,
        api: LiveStatusApi,
        bus: EventBus,
        cfg: Mapping[str, Any],
        *,
        recorder: Recorder | None = None,
    ) -> "Monitor":
        monitor_cfg = cfg.get("monitor") or {}
        return cls(
            room,
            api,
            bus,
            recorder or Recorder.from_cfg(room, api, bus, cfg),
            poll_interval=float(monitor_cfg.get("poll_interval_sec", 30.0) or 30.0),
        )

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _log(self, message: str) -> None:
        self.bus.publish(EventKind.LOG, self.room, f"[{self.room.room_id}] {message}")

    # --- lifecycle ---
    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._wake.clear()
        self.room.monitor = self
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"monitor-{self.room.room_id}"
        )
        log.info("monitor started room=%s interval=%.1fs", self.room.room_id, self.poll_interval)

    async def stop(self) -> None:
        """Stop polling and the recorder. No status query is issued after this returns."""
        self._stopped = True
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        # Waits out any in-flight check before tearing the recorder down.
        async with self.room.lock:
            await self.recorder.stop()
            self.room.phase = MonitorPhase.IDLE
        if self.room.monitor is self:
            self.room.monitor = None
        log.info("monitor stopped room=%s", self.room.room_id)

    def trigger_check(self) -> None:
        """Wake the loop for an immediate MANUAL check."""
        if self.running:
            self._wake.set()

    async def _run(self) -> None:
        trigger = TriggerType.STARTUP_RECONCILE
        while not self._stopped:
            try:
                await self.check(trigger)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("check crashed room=%s trigger=%s", self.room.room_id, trigger.value)
            trigger = await self._wait_next()

    async def _wait_next(self) -> TriggerType:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return TriggerType.TIMER
        self._wake.clear()
        return TriggerType.MANUAL

    # --- checking ---
    async def check(self, trigger: TriggerType = TriggerType.MANUAL) -> MonitorPhase:
        """Run a single status poll and act on any transition."""
        if self._stopped:
            return self.room.phase
        self.room.phase = MonitorPhase.CHECKING
        log.debug("checking room=%s trigger=%s", self.room.room_id, trigger.value)

        try:
            info = await self.api.get_room_info(self.room.room_id)
        except RoomNotFound as exc:
            self.room.phase = MonitorPhase.ERROR
            log.error("room lookup failed room=%s trigger=%s: %s", self.room.room_id, trigger.value, exc)
            self._log(f"room not found, will retry: {exc}")
            return self.room.phase
        except TransientApiError as exc:
            self.room.phase = MonitorPhase.ERROR
            log.warning("status query failed room=%s trigger=%s: %s", self.room.room_id, trigger.value, exc)
            return self.room.phase
        except ApiError as exc:
            self.room.phase = MonitorPhase.ERROR
            log.error("status query rejected room=%s trigger=%s: %s", self.room.room_id, trigger.value, exc)
            self._log(f"status query failed: {exc}")
            return self.room.phase

        async with self.room.lock:
            if self._stopped:
                return self.room.phase
            await self._apply(info, trigger)
            return self.room.phase

    async def _apply(self, info: RoomInfo, trigger: TriggerType) -> None:
        room = self.room
        first_check = room.last_checked is None
        room.last_checked = time.time()
        if info.display_name:
            room.display_name = info.display_name

        if info.title != room.title:
            previous = room.title
            room.title = info.title
            if not first_check:
                log.info("title changed room=%s %r -> %r", room.room_id, previous, info.title)
                self.bus.publish(EventKind.TITLE_CHANGED, room, info.title)

        was_live = room.is_live
        room.is_live = info.is_live

        if info.is_live and not was_live:
            log.info("room went live room=%s trigger=%s", room.room_id, trigger.value)
            self._log(f"live ({trigger.value}): {room.title}")
            self.bus.publish(EventKind.NOTIFY, room, room.title)
            await self._start_recorder()
        elif info.is_live and not self.recorder.is_recording:
            # Capture ended while the room is still live.
            log.info("restarting capture room=%s", room.room_id)
            await self._start_recorder()
        elif not info.is_live and was_live:
            log.info("room went offline room=%s trigger=%s", room.room_id, trigger.value)
            self._log(f"offline ({trigger.value})")
            await self.recorder.stop()

        room.phase = MonitorPhase.LIVE if info.is_live else MonitorPhase.OFFLINE

    async def _start_recorder(self) -> None:
        try:
            await self.recorder.start()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # is_live stays set; the next check retries through the restart branch.
            log.error("recorder start failed room=%s: %s", self.room.room_id, exc)
            self._log(f"recording could not start: {exc}")
