"""Append-only per-room history of broadcast titles."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path

log = logging.getLogger("autosplit.title_log")


class TitleHistory:
    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory).expanduser()
        self._lock = threading.Lock()

    def path_for(self, room_id: int) -> Path:
        return self.directory / f"{int(room_id)}.log"

    def append(self, room_id: int, title: str, *, when: datetime | None = None) -> Path:
        stamp = (when or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
        # One line per entry; embedded newlines would break read().
        line = f"[{stamp}] {' '.join(str(title).splitlines())}\n"
        path = self.path_for(room_id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        log.debug("title recorded room=%s title=%r", room_id, title)
        return path

    def read(self, room_id: int) -> list[str]:
        path = self.path_for(room_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line for line in text.splitlines() if line.strip()]
