#!/usr/bin/env python3
"""Optional "room went live" notifications delivered by webhook."""

from __future__ import annotations

import json
import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.error import URLError
from urllib.request import Request, urlopen

log = logging.getLogger("autosplit.notifications")


def _as_int_set(value: Any) -> frozenset[int]:
    if isinstance(value, (int, str)):
        value = [value]
    if not isinstance(value, (list, tuple, set)):
        return frozenset()
    out: set[int] = set()
    for item in value:
        try:
            out.add(int(item))
        except (TypeError, ValueError):
            continue
    return frozenset(out)


@dataclass
class NotificationFilters:
    """Limit notifications to a subset of rooms. Empty means every room."""

    room_ids: frozenset[int] = frozenset()

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None) -> "NotificationFilters":
        return cls(room_ids=_as_int_set((cfg or {}).get("room_ids")))

    def matches(self, notification: Mapping[str, Any]) -> bool:
        if not self.room_ids:
            return True
        try:
            return int(notification.get("room_id") or 0) in self.room_ids
        except (TypeError, ValueError):
            return False


def live_message(display_name: str) -> str:
    return f"{display_name} is live!"


class NotificationDispatcher:
    """Posts JSON payloads to a webhook from a background worker thread."""

    def __init__(
        self,
        *,
        filters: NotificationFilters,
        webhook_cfg: Mapping[str, Any] | None,
        run_async: bool = True,
        queue_size: int = 32,
    ) -> None:
        self.filters = filters
        self.webhook_cfg = dict(webhook_cfg or {})
        self.hostname = socket.gethostname()
        self._run_async = run_async
        self._queue: queue.Queue[dict[str, Any] | None] | None = None
        self._worker: threading.Thread | None = None
        self._queue_size = max(1, int(queue_size or 32))

        self.webhook_url = str(self.webhook_cfg.get("url") or "").strip()
        self.webhook_method = (str(self.webhook_cfg.get("method", "POST")) or "POST").upper()
        self.webhook_headers = self._normalise_headers(self.webhook_cfg.get("headers"))
        self.webhook_timeout = float(self.webhook_cfg.get("timeout_sec", 5.0) or 5.0)

        if self._run_async:
            self._queue = queue.Queue(maxsize=self._queue_size)
            self._worker = threading.Thread(
                target=self._dispatch_loop,
                name="notification-dispatcher",
                daemon=True,
            )
            self._worker.start()

    @staticmethod
    def _normalise_headers(headers: Any) -> dict[str, str]:
        if isinstance(headers, Mapping):
            return {str(key): str(value) for key, value in headers.items() if str(key).strip()}
        return {}

    def notify_live(self, room_id: int, display_name: str, title: str) -> None:
        self.handle({
            "type": "live",
            "room_id": int(room_id),
            "message": live_message(display_name),
            "title": title,
        })

    def handle(self, notification: dict[str, Any]) -> None:
        if not self.filters.matches(notification):
            return

        payload = {
            "notification": notification,
            "host": self.hostname,
            "generated_at": time.time(),
        }

        if not self._run_async:
            self._dispatch_payload(payload)
            return

        assert self._queue is not None
        try:
            self._queue.put_nowait(payload)
        except queue.Full:
            log.warning("dropping notification for room %s (queue full)", notification.get("room_id"))

    def close(self, timeout: float = 2.0) -> None:
        if self._queue is None or self._worker is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            log.warning("notification queue full at shutdown; abandoning worker")
            return
        self._worker.join(timeout)
        self._worker = None

    def _dispatch_loop(self) -> None:
        assert self._queue is not None
        while True:
            payload = self._queue.get()
            try:
                if payload is None:
                    break
                self._dispatch_payload(payload)
            finally:
                self._queue.task_done()

    def _dispatch_payload(self, payload: dict[str, Any]) -> None:
        try:
            self._send_webhook(payload)
        except Exception as exc:
            log.warning("webhook dispatch raised unexpected error: %s", exc)

    def _send_webhook(self, payload: dict[str, Any]) -> None:
        if not self.webhook_url:
            return

        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        request = Request(
            self.webhook_url,
            data=body,
            method=self.webhook_method,
            headers={"Content-Type": "application/json", **self.webhook_headers},
        )

        try:
            with urlopen(request, timeout=self.webhook_timeout) as response:
                response.read()
        except URLError as exc:
            log.warning("webhook delivery failed: %s", exc)


def build_dispatcher(cfg: Mapping[str, Any] | None) -> NotificationDispatcher | None:
    if not isinstance(cfg, Mapping):
        return None
    if not bool(cfg.get("enabled")):
        return None
    webhook_cfg = cfg.get("webhook")
    if not webhook_cfg:
        return None
    return NotificationDispatcher(
        filters=NotificationFilters.from_cfg(cfg),
        webhook_cfg=webhook_cfg,
    )
