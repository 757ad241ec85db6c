"""Recoverable deletion of recordings via a recycle bin directory."""
from __future__ import annotations

import argparse
import json
import os
import secrets
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

RECYCLE_BIN_DIRNAME = ".recycle_bin"
RECYCLE_METADATA_FILENAME = "metadata.json"


@dataclass(frozen=True)
class RecycleMoveResult:
    """Summary of a recycle bin move operation."""

    entry_id: str
    entry_dir: Path
    destination: Path
    original_path: Path


def _generate_entry_id(now: datetime | None = None) -> str:
    timestamp = datetime.now(timezone.utc) if now is None else now
    suffix = secrets.token_hex(4)
    return f"{timestamp.strftime('%Y%m%dT%H%M%S')}-{suffix}"


def recycle_root_for(path: Path, recordings_root: Path | None) -> Path:
    """Recycle bin for ``path``: under the recordings root when the file lives there."""
    if recordings_root is not None:
        root = Path(recordings_root).expanduser().resolve(strict=False)
        try:
            path.resolve().relative_to(root)
        except ValueError:
            pass
        else:
            return root / RECYCLE_BIN_DIRNAME
    return path.resolve().parent / RECYCLE_BIN_DIRNAME


def _allocate_entry(recycle_root: Path, now: datetime) -> tuple[str, Path]:
    entry_id = ""
    for _ in range(6):
        candidate_id = _generate_entry_id(now if not entry_id else None)
        candidate_dir = recycle_root / candidate_id
        try:
            candidate_dir.mkdir(parents=False, exist_ok=False)
        except FileExistsError:
            entry_id = candidate_id
            continue
        except OSError as exc:
            raise RuntimeError(f"unable to prepare recycle bin entry: {exc}") from exc
        return candidate_id, candidate_dir
    raise RuntimeError("unable to allocate recycle bin entry")


def move_to_recycle_bin(
    source_path: str | os.PathLike[str],
    recordings_root: str | os.PathLike[str] | None = None,
    *,
    reason: str = "converted",
) -> RecycleMoveResult:
    """Move ``source_path`` into the recycle bin and record where it came from."""

    source = Path(source_path)
    if not source.is_file():
        raise FileNotFoundError(f"recording not found: {source}")

    source_resolved = source.resolve()
    recycle_root = recycle_root_for(
        source_resolved, Path(recordings_root) if recordings_root is not None else None
    )
    recycle_root.mkdir(parents=True, exist_ok=True)

    try:
        stat_result = source_resolved.stat()
    except OSError as exc:  # pragma: no cover - propagated for caller handling
        raise RuntimeError(f"unable to stat recording: {exc}") from exc

    now = datetime.now(timezone.utc)
    entry_id, entry_dir = _allocate_entry(recycle_root, now)
    metadata_path = entry_dir / RECYCLE_METADATA_FILENAME
    destination = entry_dir / source_resolved.name
    moved = False

    try:
        shutil.move(str(source_resolved), str(destination))
        moved = True
        metadata = {
            "id": entry_id,
            "stored_name": destination.name,
            "original_path": str(source_resolved),
            "deleted_at": now.isoformat(),
            "deleted_at_epoch": now.timestamp(),
            "size_bytes": int(getattr(stat_result, "st_size", 0)),
            "reason": reason,
        }
        with metadata_path.open("w", encoding="utf-8") as handle:
            json.dump(metadata, handle)
    except Exception as exc:
        if moved and destination.exists():
            try:
                shutil.move(str(destination), str(source_resolved))
            except OSError:
                pass
        shutil.rmtree(entry_dir, ignore_errors=True)
        raise RuntimeError(f"unable to move recording to recycle bin: {exc}") from exc

    return RecycleMoveResult(
        entry_id=entry_id,
        entry_dir=entry_dir,
        destination=destination,
        original_path=source_resolved,
    )


def list_entries(recycle_root: str | os.PathLike[str]) -> list[dict[str, Any]]:
    root = Path(recycle_root)
    if not root.is_dir():
        return []
    entries: list[dict[str, Any]] = []
    for entry_dir in sorted(root.iterdir()):
        metadata_path = entry_dir / RECYCLE_METADATA_FILENAME
        if not metadata_path.is_file():
            continue
        try:
            with metadata_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError):
            continue
        if isinstance(payload, dict):
            entries.append(payload)
    return entries


def restore_entry(recycle_root: str | os.PathLike[str], entry_id: str) -> Path:
    """Put a recycled recording back at its original path."""
    entry_dir = Path(recycle_root) / entry_id
    metadata_path = entry_dir / RECYCLE_METADATA_FILENAME
    try:
        with metadata_path.open("r", encoding="utf-8") as handle:
            metadata = json.load(handle)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"recycle bin entry not found: {entry_id}") from exc

    stored = entry_dir / str(metadata.get("stored_name") or "")
    original = Path(str(metadata.get("original_path") or ""))
    if not stored.is_file() or not original.name:
        raise RuntimeError(f"recycle bin entry {entry_id} is incomplete")
    if original.exists():
        raise FileExistsError(f"refusing to overwrite {original}")

    original.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(stored), str(original))
    shutil.rmtree(entry_dir, ignore_errors=True)
    return original


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Recycle bin helpers")
    subparsers = parser.add_subparsers(dest="command", required=True)

    move_parser = subparsers.add_parser("move", help="Move a recording into the recycle bin")
    move_parser.add_argument("--recordings-root")
    move_parser.add_argument("--path", required=True)
    move_parser.add_argument("--reason", default="manual")

    list_parser = subparsers.add_parser("list", help="List recycle bin entries")
    list_parser.add_argument("--recycle-root", required=True)

    restore_parser = subparsers.add_parser("restore", help="Restore a recycle bin entry")
    restore_parser.add_argument("--recycle-root", required=True)
    restore_parser.add_argument("--entry", required=True)
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.command == "move":
        result = move_to_recycle_bin(args.path, args.recordings_root, reason=args.reason)
        print(result.entry_id)
        return 0
    if args.command == "list":
        for entry in list_entries(args.recycle_root):
            print(f"{entry.get('id')}\t{entry.get('original_path')}")
        return 0
    if args.command == "restore":
        print(restore_entry(args.recycle_root, args.entry))
        return 0

    parser.error("no command specified")
    return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
