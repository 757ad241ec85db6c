from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from autosplit.events import EventBus, EventKind
from autosplit.recorder import Recorder, RecorderState, build_output_path, sanitize_title
from autosplit.rooms import RoomState

from helpers import CAPTURE_SCRIPT, SHORT_CAPTURE_SCRIPT, FakeApi, python_cmd, room_info, wait_until


def _completions(bus: EventBus) -> list:
    return [e for e in bus.history_snapshot() if e.kind is EventKind.RECORD_COMPLETED]


def _recorder(tmp_path: Path, factory, **kwargs):
    room = RoomState(1001, 5, "streamer", "Night: stream / 2")
    bus = EventBus()
    recorder = Recorder(
        room,
        FakeApi({1001: room_info()}),
        bus,
        record_dir=tmp_path,
        command_factory=factory,
        **kwargs,
    )
    return recorder, bus


def test_output_path_layout(tmp_path: Path) -> None:
    room = RoomState(1001, title='a/b:c*"d"')
    path = build_output_path(tmp_path, room, ".flv", now=datetime(2024, 3, 1, 20, 5, 9))

    assert path == tmp_path / "1001" / "1001-20240301-200509-a_b_c_d.flv"
    assert sanitize_title("   ") == ""


@pytest.mark.asyncio
async def test_stop_emits_single_completion(tmp_path: Path) -> None:
    recorder, bus = _recorder(tmp_path, lambda url, out: python_cmd(CAPTURE_SCRIPT, out))

    output = await recorder.start()
    assert recorder.is_recording
    assert await recorder.start() == output
    await wait_until(lambda: output.exists() and output.stat().st_size > 0)

    await asyncio.gather(recorder.stop(), recorder.stop())
    await recorder.stop()

    assert not recorder.is_recording
    assert recorder.state is RecorderState.COMPLETED
    completions = _completions(bus)
    assert len(completions) == 1
    assert completions[0].payload == str(output)
    assert output.parent == tmp_path / "1001"


@pytest.mark.asyncio
async def test_natural_end_emits_single_completion(tmp_path: Path) -> None:
    recorder, bus = _recorder(tmp_path, lambda url, out: python_cmd(SHORT_CAPTURE_SCRIPT, out))

    output = await recorder.start()
    await wait_until(lambda: not recorder.is_recording)
    await recorder.stop()

    assert output.read_bytes().startswith(b"FLV")
    assert len(_completions(bus)) == 1


@pytest.mark.asyncio
async def test_crashed_capture_still_reports_partial_file(tmp_path: Path, caplog) -> None:
    recorder, bus = _recorder(tmp_path, lambda url, out: python_cmd(SHORT_CAPTURE_SCRIPT, out, 2))

    await recorder.start()
    await wait_until(lambda: not recorder.is_recording)

    assert recorder.state is RecorderState.FAILED
    assert "capture failed" in caplog.text
    assert len(_completions(bus)) == 1


@pytest.mark.asyncio
async def test_each_start_gets_its_own_completion(tmp_path: Path) -> None:
    recorder, bus = _recorder(tmp_path, lambda url, out: python_cmd(CAPTURE_SCRIPT, out))

    first = await recorder.start()
    await wait_until(first.exists)
    await recorder.stop()
    # Distinct timestamped name for the second capture.
    await asyncio.sleep(1.05)
    second = await recorder.start()
    await wait_until(second.exists)
    await recorder.stop()

    assert first != second
    assert [e.payload for e in _completions(bus)] == [str(first), str(second)]


@pytest.mark.asyncio
async def test_capture_without_output_still_completes(tmp_path: Path, caplog) -> None:
    recorder, bus = _recorder(tmp_path, lambda url, out: python_cmd("import sys; sys.exit(0)"))

    output = await recorder.start()
    await wait_until(lambda: not recorder.is_recording)

    assert not output.exists()
    assert "capture produced no data" in caplog.text
    assert [e.payload for e in _completions(bus)] == [str(output)]
