from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from careops_router.errors import TransientUnavailableError
from careops_router.gateway.audit import (
    DETAIL_MAX_CHARS,
    DispatchAuditLog,
    sanitize_dispatch_event,
)
from tests.dispatch_test_utils import (
    A1,
    A2,
    OK_PAYLOAD,
    Answer,
    ScriptedTransport,
    build_orchestrator,
)


def _read_events(path: Path) -> list[dict[str, Any]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_audit_log_writes_records_and_closing_summary(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "dispatch_events.jsonl"
    audit_log = DispatchAuditLog(path=str(log_path), enabled=True)
    audit_log.record({"event": "dispatch_success", "request_id": "req-1"})
    audit_log.close()

    events = _read_events(log_path)
    assert events[0]["event"] == "dispatch_success"
    assert events[0]["request_id"] == "req-1"
    assert "ts" in events[0]
    assert events[-1] == {
        "ts": events[-1]["ts"],
        "event": "audit_log_closed",
        "written": 1,
        "dropped": 0,
    }
    assert audit_log.written == 1


def test_disabled_audit_log_creates_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "dispatch_events.jsonl"
    audit_log = DispatchAuditLog(path=str(log_path), enabled=False)
    audit_log.record({"event": "dispatch_success"})
    audit_log.close()

    assert not log_path.parent.exists()
    assert audit_log.written == 0


def test_records_after_close_are_ignored(tmp_path: Path) -> None:
    log_path = tmp_path / "dispatch_events.jsonl"
    audit_log = DispatchAuditLog(path=str(log_path))
    audit_log.close()
    audit_log.record({"event": "dispatch_success"})

    assert [event["event"] for event in _read_events(log_path)] == ["audit_log_closed"]


def test_attempt_failure_detail_is_scrubbed_and_truncated() -> None:
    backend_text = (
        "UNAVAILABLE: upstream echoed https://example.test/v1?key=AIzaSyD-secretsecretsecret1234 "
        + "overloaded " * 100
    )
    events: list[dict[str, Any]] = []
    transport = ScriptedTransport(
        {A1: [TransientUnavailableError(backend_text)] * 2, A2: [OK_PAYLOAD]}
    )
    orchestrator = build_orchestrator(transport, audit_events=events)
    asyncio.run(orchestrator.dispatch([], "hello", "quality-first", Answer))

    failed = [event for event in events if event["event"] == "dispatch_attempt_failed"]
    assert len(failed) == 2
    sanitized = sanitize_dispatch_event(failed[0])

    assert failed[0]["detail"] == backend_text
    assert "AIza" not in sanitized["detail"]
    assert "key=[redacted]" in sanitized["detail"]
    assert len(sanitized["detail"]) == DETAIL_MAX_CHARS
    assert sanitized["detail"].endswith("...")
    assert sanitized["endpoint"] == "tier-a:1"
    assert sanitized["action"] == "retry_same"


def test_bare_credential_in_detail_is_redacted() -> None:
    sanitized = sanitize_dispatch_event(
        {
            "event": "dispatch_attempt_failed",
            "detail": "API key AIzaSyD-secretsecretsecret1234 not valid",
            "tried": ("tier-a:1",),
        }
    )

    assert sanitized["detail"] == "API key [redacted] not valid"
    assert sanitized["tried"] == ["tier-a:1"]
