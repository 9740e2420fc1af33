from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from careops_router import main
from careops_router.settings import get_settings
from tests.client_test_utils import build_test_client, set_default_test_env


class _RecordingTransport:
    instances: list["_RecordingTransport"] = []

    def __init__(self, api_keys: list[str], **kwargs: Any) -> None:
        self.api_keys = api_keys
        self.closed = False
        _RecordingTransport.instances.append(self)

    async def close(self) -> None:
        self.closed = True


def _use_recording_transport(monkeypatch: Any) -> None:
    _RecordingTransport.instances = []
    monkeypatch.setattr(main, "GeminiTransport", _RecordingTransport)


def test_startup_without_credentials_builds_no_transport(
    monkeypatch: Any, tmp_path: Path
) -> None:
    set_default_test_env(monkeypatch, tmp_path)
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("GEMINI_API_KEY_BACKUP", "")
    _use_recording_transport(monkeypatch)
    get_settings.cache_clear()
    try:
        with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
            asyncio.run(main.startup())
    finally:
        get_settings.cache_clear()

    assert _RecordingTransport.instances == []


def test_startup_closes_transport_when_profile_fails_to_load(
    monkeypatch: Any, tmp_path: Path
) -> None:
    set_default_test_env(monkeypatch, tmp_path)
    monkeypatch.setenv("ROUTER_PROFILE_PATH", str(tmp_path / "absent.yaml"))
    _use_recording_transport(monkeypatch)
    get_settings.cache_clear()
    try:
        with pytest.raises(FileNotFoundError):
            asyncio.run(main.startup())
    finally:
        get_settings.cache_clear()

    assert len(_RecordingTransport.instances) == 1
    assert _RecordingTransport.instances[0].closed is True


def test_audit_log_receives_dispatch_events_from_startup_wiring(
    monkeypatch: Any, tmp_path: Path
) -> None:
    audit_path = tmp_path / "dispatch_events.jsonl"
    with build_test_client(monkeypatch, tmp_path) as client:
        assert client.get("/health").status_code == 200
        audit_log = main.app.state.audit_log
        main.app.state.orchestrator._audit("dispatch_exhausted", request_id="req-9")

    assert audit_log.written == 1
    lines = audit_path.read_text(encoding="utf-8").splitlines()
    assert '"request_id":"req-9"' in lines[0]
    assert '"event":"audit_log_closed"' in lines[-1]
