from __future__ import annotations

import json
import re
import time
from pathlib import Path
from queue import Empty, Full, Queue
from threading import Event, Lock, Thread
from typing import Any

DETAIL_MAX_CHARS = 240

_CREDENTIAL_PATTERNS = (
    re.compile(r"AIza[0-9A-Za-z_\-]{20,}"),
    re.compile(r"(?i)(key=)[^&\s\"']+"),
)
_LABEL_LIST_FIELDS = ("tried",)


def _scrub_detail(detail: str) -> str:
    text = " ".join(detail.split())
    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(
            lambda match: (match.group(1) if match.groups() else "") + "[redacted]",
            text,
        )
    if len(text) > DETAIL_MAX_CHARS:
        text = text[: DETAIL_MAX_CHARS - 3] + "..."
    return text


def sanitize_dispatch_event(event: dict[str, Any]) -> dict[str, Any]:
    # Backend error text can echo credentials and runs to kilobytes.
    sanitized = dict(event)
    detail = sanitized.get("detail")
    if isinstance(detail, str):
        sanitized["detail"] = _scrub_detail(detail)
    for name in _LABEL_LIST_FIELDS:
        value = sanitized.get(name)
        if isinstance(value, (list, tuple)):
            sanitized[name] = [str(item) for item in value]
    return sanitized


class DispatchAuditLog:
    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_pending: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._counts_lock = Lock()
        self._written = 0
        self._dropped = 0
        self._pending: Queue[dict[str, Any]] = Queue(maxsize=max(1, max_pending))
        self._stopping = Event()
        self._writer: Thread | None = None
        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = Thread(
                target=self._write_loop, name="dispatch-audit-writer", daemon=True
            )
            self._writer.start()

    @property
    def written(self) -> int:
        with self._counts_lock:
            return self._written

    @property
    def dropped(self) -> int:
        with self._counts_lock:
            return self._dropped

    def record(self, event: dict[str, Any]) -> None:
        if self._writer is None or self._stopping.is_set():
            return
        entry = {"ts": round(time.time(), 3), **sanitize_dispatch_event(event)}
        try:
            self._pending.put_nowait(entry)
        except Full:
            with self._counts_lock:
                self._dropped += 1

    def close(self, timeout: float = 2.0) -> None:
        writer = self._writer
        if writer is None:
            return
        self._stopping.set()
        writer.join(timeout=timeout)
        self._writer = None

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            while not (self._stopping.is_set() and self._pending.empty()):
                try:
                    entry = self._pending.get(timeout=0.1)
                except Empty:
                    continue
                handle.write(_encode(entry))
                handle.flush()
                with self._counts_lock:
                    self._written += 1

            with self._counts_lock:
                summary = {
                    "ts": round(time.time(), 3),
                    "event": "audit_log_closed",
                    "written": self._written,
                    "dropped": self._dropped,
                }
            handle.write(_encode(summary))


def _encode(entry: dict[str, Any]) -> str:
    return json.dumps(entry, ensure_ascii=True, separators=(",", ":"), default=str) + "\n"
