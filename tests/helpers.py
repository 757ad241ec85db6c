"""Fakes and subprocess stand-ins shared by the test modules."""
from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path


from autosplit import config as config_module
from autosplit.bililive_api import LiveStatusApi, RoomInfo, RoomNotFound, TokenInfo

CAPTURE_SCRIPT = """
import signal, sys, time
signal.signal(signal.SIGINT, lambda *_: sys.exit(0))
with open(sys.argv[1], "wb") as out:
    out.write(b"FLV\\x01")
    out.flush()
    while True:
        time.sleep(0.05)
"""

SHORT_CAPTURE_SCRIPT = """
import sys
with open(sys.argv[1], "wb") as out:
    out.write(b"FLV\\x01")
sys.exit(int(sys.argv[2]) if len(sys.argv) > 2 else 0)
"""

COPY_SCRIPT = """
import shutil, sys
shutil.copyfile(sys.argv[1], sys.argv[2])
print("out_time_us=2500000", flush=True)
print("progress=end", flush=True)
"""

FAIL_SCRIPT = """
import sys
sys.stderr.write("moov atom not found")
sys.exit(3)
"""

SLOW_SCRIPT = """
import time
time.sleep(30)
"""


def python_cmd(script: str, *args) -> list[str]:
    return [sys.executable, "-c", script, *[str(a) for a in args]]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    monkeypatch.setattr(config_module, "_primary_config_path", None, raising=False)


class FakeApi(LiveStatusApi):
    """In-memory live-status API. ``rooms`` maps room id -> RoomInfo."""

    def __init__(self, rooms: dict[int, RoomInfo] | None = None) -> None:
        self.rooms = dict(rooms or {})
        self.info_calls = 0
        self.reloads: list[str | None] = []
        self.token_info: TokenInfo | None = None
        self.token_info_calls: list[str] = []
        self.revoked: list[str] = []
        self.error: Exception | None = None

    def set_live(self, room_id: int, is_live: bool, title: str | None = None) -> None:
        info = self.rooms[room_id]
        self.rooms[room_id] = RoomInfo(
            room_id=info.room_id,
            short_id=info.short_id,
            display_name=info.display_name,
            title=info.title if title is None else title,
            is_live=is_live,
        )

    async def get_room_info(self, room_id: int) -> RoomInfo:
        self.info_calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        for info in self.rooms.values():
            if room_id in (info.room_id, info.short_id):
                return info
        raise RoomNotFound(f"room {room_id} not found")

    async def get_play_url(self, room_id: int) -> str:
        return f"http://stream.invalid/{room_id}.flv"

    async def login(self, account: str, password: str) -> TokenInfo | None:
        return self.token_info

    async def get_token_info(self, token: str) -> TokenInfo | None:
        self.token_info_calls.append(token)
        return self.token_info

    async def revoke_token(self, token: str) -> None:
        self.revoked.append(token)

    def reload(self, credential: str | None) -> None:
        self.reloads.append(credential)


class FakeRecorder:
    def __init__(self) -> None:
        self.starts = 0
        self.stops = 0
        self.recording = False

    @property
    def is_recording(self) -> bool:
        return self.recording

    async def start(self) -> Path:
        self.starts += 1
        self.recording = True
        await asyncio.sleep(0)
        return Path("/tmp/fake.flv")

    async def stop(self) -> None:
        if self.recording:
            self.stops += 1
        self.recording = False


def room_info(room_id: int = 1001, short_id: int = 5, *, live: bool = False, title: str = "hello") -> RoomInfo:
    return RoomInfo(
        room_id=room_id, short_id=short_id, display_name=f"streamer{room_id}", title=title, is_live=live
    )

