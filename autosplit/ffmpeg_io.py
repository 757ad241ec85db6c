"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from pathlib import Path

DEFAULT_LOGLEVEL = "error"
TIMESTAMP_FIX_INPUT_FLAGS = "+genpts+igndts"
STDERR_TAIL_CHARS = 2000


class ExternalProcessFailure(Exception):
    """A capture or conversion subprocess exited abnormally."""

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def stderr_tail(raw: bytes | None) -> str:
    if not raw:
        return ""
    text = raw.decode("utf-8", errors="replace").strip()
    return text[-STDERR_TAIL_CHARS:]


def capture_args(
    url: str,
    output_path: str | Path,
    *,
    ffmpeg_path: str = "ffmpeg",
    user_agent: str | None = None,
    referer: str | None = None,
) -> list[str]:
    """Return a command that copies a live stream into ``output_path``.

    Stream copy only; the container is picked from the output extension.
    ffmpeg finalises the file when it receives SIGINT, so callers stop it
    with SIGINT before escalating.
    """

    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        DEFAULT_LOGLEVEL,
        "-y",
    ]
    if user_agent:
        cmd += ["-user_agent", user_agent]
    if referer:
        cmd += ["-headers", f"Referer: {referer}\r\n"]
    cmd += ["-i", url, "-c", "copy", str(output_path)]
    return cmd


def _progress_args() -> list[str]:
    # Machine-readable key=value progress on stdout.
    return ["-progress", "pipe:1", "-nostats"]


def convert_args(
    input_path: str | Path,
    output_path: str | Path,
    *,
    fix_timestamp: bool = False,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Remux ``input_path`` into the container implied by ``output_path``.

    ``fix_timestamp`` regenerates missing PTS and shifts negative timestamps
    to zero, which repairs most broken live captures.
    """

    cmd = [ffmpeg_path, "-hide_banner", "-nostdin", "-loglevel", DEFAULT_LOGLEVEL, "-y"]
    if fix_timestamp:
        cmd += ["-fflags", TIMESTAMP_FIX_INPUT_FLAGS]
    cmd += ["-i", str(input_path), "-map", "0", "-c", "copy"]
    if fix_timestamp:
        cmd += ["-avoid_negative_ts", "make_zero"]
    if str(output_path).lower().endswith((".mp4", ".m4v", ".mov")):
        cmd += ["-movflags", "+faststart"]
    cmd += _progress_args()
    cmd.append(str(output_path))
    return cmd


def split_args(
    input_path: str | Path,
    output_path: str | Path,
    start_time: str,
    duration: str,
    *,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Extract ``[start_time, start_time + duration)`` without re-encoding.

    ``-ss`` before ``-i`` seeks on the input so the cut is fast; the
    resulting clip starts on the nearest preceding keyframe.
    """

    return [
        ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        DEFAULT_LOGLEVEL,
        "-y",
        "-ss",
        str(start_time),
        "-t",
        str(duration),
        "-i",
        str(input_path),
        "-map",
        "0",
        "-c",
        "copy",
        "-avoid_negative_ts",
        "make_zero",
        *_progress_args(),
        str(output_path),
    ]


def duration_args(path: str | Path, *, ffprobe_path: str = "ffprobe") -> list[str]:
    return [
        ffprobe_path,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(path),
    ]


def parse_timecode(value: str | float | int) -> float:
    """Parse ``HH:MM:SS(.fff)``, ``MM:SS`` or plain seconds into seconds."""

    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    text = str(value).strip()
    if not text:
        raise ValueError("empty timecode")
    parts = text.split(":")
    if len(parts) > 3:
        raise ValueError(f"invalid timecode: {value!r}")
    seconds = 0.0
    for part in parts:
        seconds = seconds * 60 + float(part)
    if seconds < 0:
        raise ValueError(f"negative timecode: {value!r}")
    return seconds


def parse_progress_line(line: str) -> tuple[str, str] | None:
    """Split one ``-progress`` line into ``(key, value)``."""

    key, sep, value = line.strip().partition("=")
    if not sep or not key:
        return None
    return key.strip(), value.strip()
