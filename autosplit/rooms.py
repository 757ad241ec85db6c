"""Room identity, lifecycle phase and the shared room arena."""

from __future__ import annotations

import asyncio
import enum
import threading
from typing import TYPE_CHECKING, Any, Iterable, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from autosplit.bililive_api import RoomInfo
    from autosplit.monitor import Monitor


class TriggerType(enum.Enum):
    """Why a status check happened. Only used for logging."""

    TIMER = "timer"
    MANUAL = "manual"
    STARTUP_RECONCILE = "startup"


class MonitorPhase(enum.Enum):
    IDLE = "idle"
    CHECKING = "checking"
    LIVE = "live"
    OFFLINE = "offline"
    ERROR = "error"


class RoomConflict(Exception):
    """Raised when a room id or short id is already managed."""


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class RoomState:
    """One monitored room.

    ``room_id`` and ``short_id`` never change after construction; everything
    else is updated by the room's Monitor under ``lock``.
    """

    def __init__(
        self,
        room_id: int,
        short_id: int = 0,
        display_name: str = "",
        title: str = "",
        *,
        is_live: bool = False,
    ) -> None:
        if int(room_id) <= 0:
            raise ValueError(f"invalid room id: {room_id!r}")
        self.room_id = int(room_id)
        self.short_id = max(0, int(short_id or 0))
        self.display_name = display_name or str(self.room_id)
        self.title = title
        self.is_live = is_live
        self.last_checked: float | None = None
        self.phase = MonitorPhase.IDLE
        self.monitor: "Monitor | None" = None
        self.lock = asyncio.Lock()

    @classmethod
    def from_config(cls, entry: Mapping[str, Any]) -> "RoomState":
        return cls(
            _as_int(entry.get("room_id")),
            _as_int(entry.get("short_id")),
            str(entry.get("display_name") or ""),
        )

    @classmethod
    def from_info(cls, info: "RoomInfo") -> "RoomState":
        # is_live stays False so the first check performs the offline->live transition.
        return cls(info.room_id, info.short_id, info.display_name, info.title)

    def ids(self) -> set[int]:
        return {self.room_id, self.short_id} - {0}

    def matches(self, room_id: int) -> bool:
        return int(room_id) in self.ids()

    def conflicts_with(self, other: "RoomState") -> bool:
        return bool(self.ids() & other.ids())

    def to_config(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "short_id": self.short_id,
            "display_name": self.display_name,
        }

    def describe(self) -> str:
        if self.display_name and self.display_name != str(self.room_id):
            return f"{self.room_id} {self.display_name}"
        return str(self.room_id)

    def __repr__(self) -> str:
        return (
            f"RoomState(room_id={self.room_id}, short_id={self.short_id}, "
            f"display_name={self.display_name!r}, phase={self.phase.value})"
        )


class RoomRegistry:
    """Arena of RoomState objects keyed by primary room id.

    Mutation happens under a single lock; readers get snapshots so monitors
    can iterate while request handlers add or remove rooms.
    """

    def __init__(self, rooms: Iterable[RoomState] = ()) -> None:
        self._lock = threading.Lock()
        self._rooms: dict[int, RoomState] = {}
        for room in rooms:
            self.add(room)

    def add(self, room: RoomState) -> RoomState:
        with self._lock:
            for existing in self._rooms.values():
                if existing.conflicts_with(room):
                    raise RoomConflict(
                        f"room {room.room_id} conflicts with managed room {existing.room_id}"
                    )
            self._rooms[room.room_id] = room
        return room

    def contains_id(self, room_id: int) -> bool:
        return self.lookup(room_id) is not None

    def lookup(self, room_id: int) -> RoomState | None:
        """Resolve by primary id or short id."""
        with self._lock:
            room = self._rooms.get(int(room_id))
            if room is not None:
                return room
            for candidate in self._rooms.values():
                if candidate.matches(room_id):
                    return candidate
        return None

    def get(self, room_id: int) -> RoomState | None:
        """Resolve by primary id only."""
        with self._lock:
            return self._rooms.get(int(room_id))

    def remove(self, room_id: int) -> RoomState | None:
        with self._lock:
            return self._rooms.pop(int(room_id), None)

    def snapshot(self) -> list[RoomState]:
        with self._lock:
            return list(self._rooms.values())

    def to_config(self) -> list[dict[str, Any]]:
        return [room.to_config() for room in self.snapshot()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        if not isinstance(room_id, int):
            return False
        return self.contains_id(room_id)
