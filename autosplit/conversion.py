"""Cancellable post-processing tasks (remux and time-range extraction)."""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from autosplit import ffmpeg_io
from autosplit.events import EventBus, EventKind
from autosplit.ffmpeg_io import ExternalProcessFailure
from autosplit.recycle_bin import move_to_recycle_bin

log = logging.getLogger("autosplit.conversion")

_task_ids = itertools.count(1)


class ConversionKind(enum.Enum):
    CONVERT = "convert"
    SPLIT = "split"


class TaskState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


class ConversionConflict(Exception):
    """A pending or running task already writes the requested output path."""


def _norm(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve(strict=False))


class ConversionTask:
    """One transcode or trim run of the external converter.

    The task moves ``PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED``
    and never leaves a terminal state. Nothing raised while running escapes
    ``run()``: failures are logged and recorded on the task.
    """

    def __init__(
        self,
        input_path: str | Path = "",
        output_path: str | Path = "",
        kind: ConversionKind = ConversionKind.CONVERT,
        *,
        start_time: str | None = None,
        duration: str | None = None,
        delete_source: bool = False,
        delete_to_recycle: bool = True,
        fix_timestamp: bool = False,
        recordings_root: Path | None = None,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        delete_locks: set[str] | None = None,
        on_finished: Callable[["ConversionTask"], None] | None = None,
    ) -> None:
        self.task_id = next(_task_ids)
        self.input_path = Path(input_path) if input_path else Path()
        self.output_path = Path(output_path) if output_path else Path()
        self.kind = kind
        self.start_time = start_time
        self.duration = duration
        self.delete_source = delete_source
        self.delete_to_recycle = delete_to_recycle
        self.fix_timestamp = fix_timestamp
        self.recordings_root = recordings_root
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.state = TaskState.PENDING
        self.progress = 0.0
        self.error: str | None = None
        self.created_at = time.time()
        self.finished_at: float | None = None
        self._delete_locks = delete_locks if delete_locks is not None else set()
        self._on_finished = on_finished
        self._proc: asyncio.subprocess.Process | None = None
        self._cancel_requested = False

    def __repr__(self) -> str:
        return (
            f"ConversionTask(id={self.task_id}, kind={self.kind.value}, "
            f"input={str(self.input_path)!r}, state={self.state.value})"
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.task_id,
            "kind": self.kind.value,
            "input": str(self.input_path),
            "output": str(self.output_path),
            "state": self.state.value,
            "progress": round(self.progress, 1),
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }

    # --- entry points ---
    async def convert(
        self,
        input_path: str | Path,
        output_path: str | Path,
        delete_source: bool = False,
        delete_to_recycle: bool = True,
        fix_timestamp: bool = False,
    ) -> TaskState:
        self.kind = ConversionKind.CONVERT
        self.input_path = Path(input_path)
        self.output_path = Path(output_path)
        self.delete_source = delete_source
        self.delete_to_recycle = delete_to_recycle
        self.fix_timestamp = fix_timestamp
        return await self.run()

    async def split(
        self, input_path: str | Path, output_path: str | Path, start_time: str, duration: str
    ) -> TaskState:
        self.kind = ConversionKind.SPLIT
        self.input_path = Path(input_path)
        self.output_path = Path(output_path)
        self.start_time = start_time
        self.duration = duration
        return await self.run()

    def stop(self) -> None:
        """Cancel the task. A no-op once the task is terminal."""
        if self.is_terminal:
            return
        self._cancel_requested = True
        if self.state is TaskState.PENDING:
            self._finish(TaskState.CANCELLED)
            return
        proc = self._proc
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def run(self) -> TaskState:
        if self.state is not TaskState.PENDING:
            return self.state
        self.state = TaskState.RUNNING
        try:
            await self._execute()
        except asyncio.CancelledError:
            await self._kill()
            self._finish(TaskState.CANCELLED)
            raise
        except Exception as exc:
            if self._cancel_requested:
                self._finish(TaskState.CANCELLED)
            else:
                self.error = str(exc) or exc.__class__.__name__
                log.exception(
                    "task %s failed kind=%s input=%s output=%s",
                    self.task_id,
                    self.kind.value,
                    self.input_path,
                    self.output_path,
                )
                self._finish(TaskState.FAILED)
        else:
            self._finish(TaskState.CANCELLED if self._cancel_requested else TaskState.COMPLETED)
        return self.state

    # --- internals ---
    def _finish(self, state: TaskState) -> None:
        if self.is_terminal:
            return
        self.state = state
        self.finished_at = time.time()
        if state is TaskState.COMPLETED:
            self.progress = 100.0
        log.info("task %s %s kind=%s output=%s", self.task_id, state.value, self.kind.value, self.output_path)
        if self._on_finished is not None:
            try:
                self._on_finished(self)
            except Exception:
                log.exception("task %s completion callback failed", self.task_id)

    def _build_command(self) -> list[str]:
        if self.kind is ConversionKind.SPLIT:
            if self.start_time is None or self.duration is None:
                raise ValueError("split needs start_time and duration")
            return ffmpeg_io.split_args(
                self.input_path,
                self.output_path,
                self.start_time,
                self.duration,
                ffmpeg_path=self.ffmpeg_path,
            )
        return ffmpeg_io.convert_args(
            self.input_path,
            self.output_path,
            fix_timestamp=self.fix_timestamp,
            ffmpeg_path=self.ffmpeg_path,
        )

    async def _execute(self) -> None:
        if not self.input_path.is_file():
            raise FileNotFoundError(f"input not found: {self.input_path}")
        if _norm(self.input_path) == _norm(self.output_path):
            raise ValueError("output path must differ from input path")
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        total = await self._expected_seconds()
        if self._cancel_requested:
            return

        cmd = self._build_command()
        log.info("task %s starting: %s", self.task_id, " ".join(cmd))
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self._proc = proc
        # stop() may have landed while the spawn was in flight.
        if self._cancel_requested:
            proc.kill()
        try:
            _, stderr, rc = await asyncio.gather(
                self._consume_progress(proc.stdout, total),
                proc.stderr.read() if proc.stderr is not None else _empty(),
                proc.wait(),
            )
        finally:
            self._proc = None

        if self._cancel_requested:
            return
        if rc != 0:
            raise ExternalProcessFailure(
                f"{self.kind.value} exited with rc={rc}: {ffmpeg_io.stderr_tail(stderr)}",
                returncode=rc,
                stderr=ffmpeg_io.stderr_tail(stderr),
            )

        if self.kind is ConversionKind.CONVERT and self.delete_source:
            await self._delete_source()

    async def _expected_seconds(self) -> float | None:
        if self.kind is ConversionKind.SPLIT:
            try:
                return ffmpeg_io.parse_timecode(self.duration or "")
            except ValueError:
                return None
        return await read_duration(self.input_path, ffprobe_path=self.ffprobe_path)

    async def _consume_progress(self, stream: asyncio.StreamReader | None, total: float | None) -> None:
        if stream is None:
            return
        async for raw in stream:
            parsed = ffmpeg_io.parse_progress_line(raw.decode("utf-8", errors="replace"))
            if parsed is None:
                continue
            key, value = parsed
            # ffmpeg reports both keys in microseconds.
            if key in ("out_time_us", "out_time_ms") and total:
                try:
                    seconds = int(value) / 1_000_000
                except ValueError:
                    continue
                self.progress = max(0.0, min(99.9, seconds / total * 100.0))
            elif key == "progress" and value == "end":
                self.progress = 100.0

    async def _delete_source(self) -> None:
        try:
            if self.output_path.stat().st_size <= 0:
                log.warning("task %s output is empty; keeping source %s", self.task_id, self.input_path)
                return
        except FileNotFoundError:
            log.warning("task %s output missing; keeping source %s", self.task_id, self.input_path)
            return

        key = _norm(self.input_path)
        if key in self._delete_locks:
            log.warning("task %s skipped delete of %s: held by another task", self.task_id, key)
            return
        self._delete_locks.add(key)
        try:
            if self.delete_to_recycle:
                result = await asyncio.to_thread(
                    move_to_recycle_bin, self.input_path, self.recordings_root, reason="converted"
                )
                log.info("task %s recycled source %s -> %s", self.task_id, key, result.destination)
            else:
                await asyncio.to_thread(self.input_path.unlink)
                log.info("task %s deleted source %s", self.task_id, key)
        finally:
            self._delete_locks.discard(key)

    async def _kill(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def _empty() -> bytes:
    return b""


async def read_duration(path: Path, *, ffprobe_path: str = "ffprobe") -> float | None:
    """Container duration in seconds, or None when ffprobe cannot tell."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *ffmpeg_io.duration_args(path, ffprobe_path=ffprobe_path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        log.debug("ffprobe unavailable: %s", exc)
        return None
    stdout, _ = await proc.communicate()
    if proc.returncode != 0:
        return None
    try:
        value = float(stdout.decode("utf-8", errors="replace").strip())
    except ValueError:
        return None
    return value if value > 0 else None


class ConversionQueue:
    """Registry of conversion tasks plus the asyncio tasks that run them.

    ``submit`` never blocks. Tasks stay in ``tasks`` until ``cleanup()``
    removes the terminal ones.
    """

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        max_concurrent: int = 0,
        recordings_root: Path | None = None,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
    ) -> None:
        self.bus = bus
        self.recordings_root = recordings_root
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self._tasks: list[ConversionTask] = []
        self._runners: dict[int, asyncio.Task] = {}
        self._delete_locks: set[str] = set()
        self._semaphore = asyncio.Semaphore(max_concurrent) if max_concurrent > 0 else None

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any], *, bus: EventBus | None = None) -> "ConversionQueue":
        conv = cfg.get("conversion") or {}
        paths = cfg.get("paths") or {}
        record_dir = paths.get("record_dir")
        return cls(
            bus=bus,
            max_concurrent=int(conv.get("max_concurrent", 0) or 0),
            recordings_root=Path(record_dir).expanduser() if record_dir else None,
            ffmpeg_path=str(conv.get("ffmpeg_path") or "ffmpeg"),
            ffprobe_path=str(conv.get("ffprobe_path") or "ffprobe"),
        )

    @property
    def tasks(self) -> list[ConversionTask]:
        return list(self._tasks)

    def active(self) -> list[ConversionTask]:
        return [task for task in self._tasks if not task.is_terminal]

    def _check_conflict(self, input_path: Path, output_path: Path) -> None:
        out_key = _norm(output_path)
        for task in self.active():
            if _norm(task.output_path) == out_key:
                raise ConversionConflict(
                    f"task {task.task_id} already writes {output_path}"
                )
            if _norm(task.input_path) == out_key:
                raise ConversionConflict(f"task {task.task_id} is reading {output_path}")

    def submit_convert(
        self,
        input_path: str | Path,
        output_path: str | Path,
        *,
        delete_source: bool = False,
        delete_to_recycle: bool = True,
        fix_timestamp: bool = False,
    ) -> ConversionTask:
        return self.submit(
            ConversionKind.CONVERT,
            input_path,
            output_path,
            delete_source=delete_source,
            delete_to_recycle=delete_to_recycle,
            fix_timestamp=fix_timestamp,
        )

    def submit_split(
        self, input_path: str | Path, output_path: str | Path, start_time: str, duration: str
    ) -> ConversionTask:
        return self.submit(
            ConversionKind.SPLIT, input_path, output_path, start_time=start_time, duration=duration
        )

    def submit(
        self,
        kind: ConversionKind,
        input_path: str | Path,
        output_path: str | Path,
        **options: Any,
    ) -> ConversionTask:
        self._check_conflict(Path(input_path), Path(output_path))
        task = ConversionTask(
            input_path,
            output_path,
            kind,
            recordings_root=self.recordings_root,
            ffmpeg_path=self.ffmpeg_path,
            ffprobe_path=self.ffprobe_path,
            delete_locks=self._delete_locks,
            on_finished=self._report,
            **options,
        )
        self._tasks.append(task)
        runner = asyncio.get_running_loop().create_task(
            self._run(task), name=f"conversion-{task.task_id}"
        )
        self._runners[task.task_id] = runner
        runner.add_done_callback(lambda _t, task_id=task.task_id: self._runners.pop(task_id, None))
        log.info("queued task %s kind=%s input=%s output=%s", task.task_id, kind.value, input_path, output_path)
        return task

    async def _run(self, task: ConversionTask) -> None:
        if self._semaphore is None:
            await task.run()
            return
        async with self._semaphore:
            await task.run()

    def _report(self, task: ConversionTask) -> None:
        if self.bus is not None:
            self.bus.publish(EventKind.TASK_FINISHED, None, task.snapshot())

    def stop_all(self) -> None:
        for task in self.tasks:
            task.stop()

    async def wait_all(self, timeout: float | None = None) -> bool:
        runners = list(self._runners.values())
        if not runners:
            return True
        done, pending = await asyncio.wait(runners, timeout=timeout)
        return not pending

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every task and make sure no converter subprocess outlives us."""
        self.stop_all()
        if await self.wait_all(timeout):
            return
        runners = list(self._runners.values())
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)

    def cleanup(self) -> int:
        """Remove terminal tasks from the visible collection."""
        before = len(self._tasks)
        self._tasks = [task for task in self._tasks if not task.is_terminal]
        return before - len(self._tasks)
