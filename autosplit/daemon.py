#!/usr/bin/env python3
"""Process entry point: the monitoring daemon plus one-shot conversion tools."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Iterable

from autosplit.bililive_api import BililiveApi
from autosplit.config import ConfigStore, get_cfg
from autosplit.conversion import ConversionQueue, ConversionTask, TaskState
from autosplit.credentials import CredentialManager
from autosplit.orchestrator import Orchestrator

log = logging.getLogger("autosplit.daemon")


def _configure_logging(cfg: dict) -> None:
    dev = bool((cfg.get("logging") or {}).get("dev_mode"))
    logging.basicConfig(
        level=logging.DEBUG if dev else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def run_daemon(store: ConfigStore) -> int:
    api = BililiveApi.from_cfg(store.cfg())
    credentials = CredentialManager(api, store)
    if credentials.token:
        await credentials.apply_token()
    orchestrator = Orchestrator(api, store)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-POSIX loops
            pass

    await orchestrator.start()
    log.info("monitoring %d room(s); record_dir=%s", len(orchestrator.rooms), store.record_dir)
    try:
        await stop_event.wait()
    finally:
        log.info("shutting down...")
        await orchestrator.shutdown()
        await api.close()
    return 0


async def _run_single(task: ConversionTask, queue: ConversionQueue) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, task.stop)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - non-POSIX loops
            pass
    await queue.wait_all()
    if task.state is TaskState.COMPLETED:
        print(task.output_path)
        return 0
    detail = f": {task.error}" if task.error else ""
    print(f"{task.kind.value} {task.state.value}{detail}", file=sys.stderr)
    return 1


async def run_convert(store: ConfigStore, args: argparse.Namespace) -> int:
    conv = store.section("conversion")
    queue = ConversionQueue.from_cfg(store.cfg())
    task = queue.submit_convert(
        args.input,
        args.output,
        delete_source=args.delete_source,
        delete_to_recycle=not args.permanent and bool(conv.get("delete_to_recycle", True)),
        fix_timestamp=args.fix_timestamp or bool(conv.get("fix_timestamp", False)),
    )
    return await _run_single(task, queue)


async def run_split(store: ConfigStore, args: argparse.Namespace) -> int:
    queue = ConversionQueue.from_cfg(store.cfg())
    task = queue.submit_split(args.input, args.output, args.start, args.duration)
    return await _run_single(task, queue)


async def run_token(store: ConfigStore, args: argparse.Namespace) -> int:
    api = BililiveApi.from_cfg(store.cfg())
    try:
        manager = CredentialManager(api, store)
        if args.revoke:
            status = await manager.revoke()
        else:
            status = await manager.apply_token(args.value)
    finally:
        await api.close()
    print(status)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live room monitor and recorder")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Monitor configured rooms (default)")

    convert = sub.add_parser("convert", help="Remux one recording")
    convert.add_argument("input")
    convert.add_argument("output")
    convert.add_argument("--delete-source", action="store_true")
    convert.add_argument("--permanent", action="store_true", help="Delete without the recycle bin")
    convert.add_argument("--fix-timestamp", action="store_true")

    split = sub.add_parser("split", help="Extract a time range from one recording")
    split.add_argument("input")
    split.add_argument("output")
    split.add_argument("--start", required=True, help="HH:MM:SS or seconds")
    split.add_argument("--duration", required=True, help="HH:MM:SS or seconds")

    token = sub.add_parser("token", help="Apply or revoke the stored credential")
    token.add_argument("value", nargs="?", default=None, help="Access token or SESSDATA; empty logs out")
    token.add_argument("--revoke", action="store_true")
    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    cfg = get_cfg()
    _configure_logging(cfg)
    store = ConfigStore()

    command = args.command or "run"
    if command == "run":
        return asyncio.run(run_daemon(store))
    if command == "convert":
        return asyncio.run(run_convert(store, args))
    if command == "split":
        return asyncio.run(run_split(store, args))
    if command == "token":
        return asyncio.run(run_token(store, args))
    parser.error(f"unknown command {command!r}")
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
