"""Periodic free/used report for the recordings volume."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

log = logging.getLogger("autosplit.disk_usage")

_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


@dataclass(frozen=True)
class DiskUsageReport:
    text: str
    percent: float


def count_size(size: int | float) -> str:
    """Human-readable byte count using 1024-based units."""
    value = float(max(0, size))
    for unit in _UNITS[:-1]:
        if value < 1024:
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{value:.2f} {_UNITS[-1]}"


def format_disk_usage(available: int, total: int) -> DiskUsageReport:
    if total <= 0:
        return DiskUsageReport("", 0.0)
    used = total - available
    text = f"used {count_size(used)}/{count_size(total)} free {count_size(available)}"
    return DiskUsageReport(text, used / total * 100.0)


def get_disk_usage(path: str | Path) -> tuple[int, int]:
    """``(available, total)`` bytes for the volume holding ``path``.

    Walks up to the nearest existing parent so a record directory that has
    not been created yet still reports its volume.
    """

    candidate = Path(path).expanduser()
    while not candidate.exists() and candidate.parent != candidate:
        candidate = candidate.parent
    usage = shutil.disk_usage(candidate)
    return usage.free, usage.total


class DiskUsagePoller:
    """Refreshes a DiskUsageReport every ``interval`` seconds until stopped."""

    def __init__(
        self,
        path: str | Path,
        *,
        interval: float = 1.0,
        on_report: Callable[[DiskUsageReport], None] | None = None,
        measure: Callable[[Path], tuple[int, int]] = get_disk_usage,
    ) -> None:
        self.path = Path(path)
        self.interval = max(0.05, float(interval))
        self.on_report = on_report
        self._measure = measure
        self._task: asyncio.Task | None = None
        self.latest = DiskUsageReport("", 0.0)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def poll_once(self) -> DiskUsageReport:
        try:
            available, total = self._measure(self.path)
        except OSError as exc:
            log.warning("disk usage unavailable for %s: %s", self.path, exc)
            available, total = 0, 0
        report = format_disk_usage(available, total)
        self.latest = report
        if self.on_report is not None:
            try:
                self.on_report(report)
            except Exception:
                log.exception("disk usage callback failed")
        return report

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="disk-usage")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            self.poll_once()
            await asyncio.sleep(self.interval)
