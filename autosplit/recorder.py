"""Capture of one room's live stream into a file."""

from __future__ import annotations

import asyncio
import enum
import logging
import re
import signal
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from autosplit import ffmpeg_io
from autosplit.bililive_api import LiveStatusApi
from autosplit.events import EventBus, EventKind
from autosplit.ffmpeg_io import ExternalProcessFailure
from autosplit.rooms import RoomState

log = logging.getLogger("autosplit.recorder")

CommandFactory = Callable[[str, Path], Sequence[str]]

_UNSAFE_CHARS_RE = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')
MAX_TITLE_CHARS = 60


class RecorderState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"


def sanitize_title(title: str) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("_", title or "").strip(" ._")
    return cleaned[:MAX_TITLE_CHARS]


def build_output_path(
    record_dir: Path, room: RoomState, extension: str, now: datetime | None = None
) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    name = f"{room.room_id}-{stamp}"
    title = sanitize_title(room.title)
    if title:
        name = f"{name}-{title}"
    return Path(record_dir) / str(room.room_id) / f"{name}.{extension.lstrip('.')}"


class Recorder:
    """Runs the capture subprocess for a single room.

    ``start`` returns once the subprocess is spawned; a watcher task waits
    for it to exit and then emits exactly one RECORD_COMPLETED for that
    ``start``, whether the capture ended on its own, was stopped, crashed
    or was cancelled. Partial files are reported like complete ones.
    """

    def __init__(
        self,
        room: RoomState,
        api: LiveStatusApi,
        bus: EventBus,
        *,
        record_dir: Path,
        extension: str = "flv",
        ffmpeg_path: str = "ffmpeg",
        user_agent: str | None = None,
        stop_timeout: float = 10.0,
        command_factory: CommandFactory | None = None,
    ) -> None:
        self.room = room
        self.api = api
        self.bus = bus
        self.record_dir = Path(record_dir)
        self.extension = extension
        self.stop_timeout = max(0.1, float(stop_timeout))
        self._command_factory = command_factory or (
            lambda url, output: ffmpeg_io.capture_args(
                url,
                output,
                ffmpeg_path=ffmpeg_path,
                user_agent=user_agent,
                referer="https://live.bilibili.com/",
            )
        )
        self.state = RecorderState.IDLE
        self.output_path: Path | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._watcher: asyncio.Task | None = None
        self._stop_requested = False
        self._completion_sent = True

    @classmethod
    def from_cfg(
        cls, room: RoomState, api: LiveStatusApi, bus: EventBus, cfg: Mapping[str, Any]
    ) -> "Recorder":
        rec_cfg = cfg.get("recording") or {}
        paths = cfg.get("paths") or {}
        return cls(
            room,
            api,
            bus,
            record_dir=Path(paths.get("record_dir") or ".").expanduser(),
            extension=str(rec_cfg.get("extension") or "flv"),
            ffmpeg_path=str(rec_cfg.get("ffmpeg_path") or "ffmpeg"),
            user_agent=rec_cfg.get("user_agent"),
            stop_timeout=float(rec_cfg.get("stop_timeout_sec", 10.0) or 10.0),
        )

    @property
    def is_recording(self) -> bool:
        return self._watcher is not None and not self._watcher.done()

    def _log(self, message: str) -> None:
        self.bus.publish(EventKind.LOG, self.room, f"[{self.room.room_id}] {message}")

    async def start(self) -> Path:
        if self.is_recording:
            assert self.output_path is not None
            return self.output_path

        url = await self.api.get_play_url(self.room.room_id)
        output = build_output_path(self.record_dir, self.room, self.extension)
        output.parent.mkdir(parents=True, exist_ok=True)
        cmd = list(self._command_factory(url, output))

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self._proc = proc
        self._stop_requested = False
        self._completion_sent = False
        self.output_path = output
        self.state = RecorderState.RECORDING
        self._watcher = asyncio.create_task(
            self._watch(proc, output), name=f"recorder-{self.room.room_id}"
        )
        log.info("recording started room=%s pid=%s output=%s", self.room.room_id, proc.pid, output)
        self._log(f"recording started: {output.name}")
        return output

    async def stop(self) -> None:
        """Ask the capture to finish its file; kill it after ``stop_timeout``."""
        watcher = self._watcher
        proc = self._proc
        if watcher is None or watcher.done():
            return
        self._stop_requested = True
        self.state = RecorderState.STOPPING
        if proc is not None and proc.returncode is None:
            try:
                proc.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(watcher), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            log.warning(
                "capture did not exit within %.1fs, killing room=%s",
                self.stop_timeout,
                self.room.room_id,
            )
            if proc is not None and proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await watcher

    async def _watch(self, proc: asyncio.subprocess.Process, output: Path) -> None:
        try:
            _, stderr = await proc.communicate()
            rc = proc.returncode
            if rc not in (0, None) and not self._stop_requested:
                failure = ExternalProcessFailure(
                    f"capture exited with rc={rc}", returncode=rc, stderr=ffmpeg_io.stderr_tail(stderr)
                )
                self.state = RecorderState.FAILED
                log.error(
                    "capture failed room=%s output=%s: %s %s",
                    self.room.room_id,
                    output,
                    failure,
                    failure.stderr,
                )
                self._log(f"recording failed: {failure}")
            else:
                self.state = RecorderState.COMPLETED
        except asyncio.CancelledError:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
            self.state = RecorderState.COMPLETED
            raise
        finally:
            self._proc = None
            self._emit_completed(output)

    def _emit_completed(self, output: Path) -> None:
        if self._completion_sent:
            return
        self._completion_sent = True
        try:
            size = output.stat().st_size
        except FileNotFoundError:
            size = 0
        if size <= 0:
            log.warning("capture produced no data room=%s output=%s", self.room.room_id, output)
        log.info("recording finished room=%s output=%s bytes=%d", self.room.room_id, output, size)
        self._log(f"recording finished: {output.name}")
        self.bus.publish(EventKind.RECORD_COMPLETED, self.room, str(output))
