from __future__ import annotations

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from careops_router.assistants import (
    AssistantResult,
    BookingContext,
    generate_dashboard_insights,
    generate_smart_reply,
    process_booking_assistant,
    process_onboarding_input,
)
from careops_router.chain import ChainSelector, Policy
from careops_router.config import load_router_profile
from careops_router.cooldown import COOLDOWN_SECONDS, CooldownRegistry
from careops_router.dispatch import (
    CancellationToken,
    DispatchOrchestrator,
    PolicyTimeouts,
)
from careops_router.errors import ErrorKind
from careops_router.gateway.audit import DispatchAuditLog
from careops_router.settings import Settings, get_settings
from careops_router.transport import GeminiTransport, Transport

app = FastAPI(
    title="CareOps AI Router",
    description="Resilient Gemini request routing for CareOps AI features.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

HTTP_CLIENT_CLOSED_REQUEST = 499
DISCONNECT_POLL_SECONDS = 0.25


def build_orchestrator(
    settings: Settings,
    *,
    transport: Transport | None = None,
    cooldowns: CooldownRegistry | None = None,
    audit_hook: Callable[[dict[str, Any]], None] | None = None,
) -> DispatchOrchestrator:
    api_keys = settings.api_keys
    if not api_keys:
        raise RuntimeError(
            "No Gemini credentials configured. Set GEMINI_API_KEY "
            "(and optionally GEMINI_API_KEY_BACKUP)."
        )
    profile = load_router_profile(settings.router_profile_path)
    return DispatchOrchestrator(
        transport=transport
        or GeminiTransport(
            api_keys,
            base_url=settings.gemini_base_url,
            connect_timeout_seconds=settings.gemini_connect_timeout_seconds,
        ),
        chain_selector=ChainSelector(profile, credential_slots=len(api_keys)),
        cooldowns=cooldowns or CooldownRegistry(),
        timeouts=PolicyTimeouts(
            latency_first_seconds=max(0.1, settings.latency_first_timeout_seconds),
            quality_first_seconds=max(0.1, settings.quality_first_timeout_seconds),
        ),
        transient_retry_delay_seconds=settings.transient_retry_delay_seconds,
        audit_hook=audit_hook,
    )


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    if not settings.api_keys:
        raise RuntimeError(
            "No Gemini credentials configured. Set GEMINI_API_KEY "
            "(and optionally GEMINI_API_KEY_BACKUP)."
        )
    audit_log = DispatchAuditLog(
        path=settings.router_audit_log_path,
        enabled=settings.router_audit_log_enabled,
    )
    transport = GeminiTransport(
        settings.api_keys,
        base_url=settings.gemini_base_url,
        connect_timeout_seconds=settings.gemini_connect_timeout_seconds,
    )
    try:
        orchestrator = build_orchestrator(
            settings, transport=transport, audit_hook=audit_log.record
        )
    except Exception:
        await transport.close()
        audit_log.close()
        raise
    app.state.settings = settings
    app.state.audit_log = audit_log
    app.state.transport = transport
    app.state.orchestrator = orchestrator
    logger.info(
        (
            "startup complete credential_slots=%d profile_path=%s "
            "latency_timeout_s=%.1f quality_timeout_s=%.1f audit_log_enabled=%s"
        ),
        len(settings.api_keys),
        settings.router_profile_path or "<default>",
        settings.latency_first_timeout_seconds,
        settings.quality_first_timeout_seconds,
        settings.router_audit_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    transport: GeminiTransport | None = getattr(app.state, "transport", None)
    if transport is not None:
        await transport.close()
    audit_log: DispatchAuditLog | None = getattr(app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.close()
    logger.info("shutdown complete")


@asynccontextmanager
async def request_cancellation(
    request: Request, poll_interval: float = DISCONNECT_POLL_SECONDS
) -> AsyncIterator[CancellationToken]:
    token = CancellationToken()

    async def _watch() -> None:
        while not token.cancelled:
            if await request.is_disconnected():
                logger.info("client_disconnected path=%s", request.url.path)
                token.cancel()
                return
            await asyncio.sleep(poll_interval)

    watcher = asyncio.create_task(_watch())
    try:
        yield token
    finally:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)


async def _read_json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return payload


def _history_from(payload: dict[str, Any], key: str) -> list[dict[str, Any]]:
    history = payload.get(key)
    if history is None:
        return []
    if not isinstance(history, list):
        raise HTTPException(status_code=400, detail=f"'{key}' must be a list.")
    return [item for item in history if isinstance(item, dict)]


def _to_response(result: AssistantResult) -> JSONResponse:
    if result.failure_kind is ErrorKind.EXHAUSTED_ALL_ENDPOINTS:
        return JSONResponse(
            status_code=503,
            content=result.body,
            headers={"Retry-After": str(int(COOLDOWN_SECONDS))},
        )
    if result.failure_kind is ErrorKind.CANCELLED:
        return JSONResponse(status_code=HTTP_CLIENT_CLOSED_REQUEST, content=result.body)
    if result.failure_kind is not None:
        return JSONResponse(status_code=502, content=result.body)
    return JSONResponse(content=result.body)


def _orchestrator() -> DispatchOrchestrator:
    return app.state.orchestrator


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/ai/router/status")
async def router_status() -> dict[str, Any]:
    orchestrator = _orchestrator()
    return {
        "cooldowns": orchestrator.cooldowns.snapshot(),
        "credential_slots": orchestrator.chain_selector.credential_slots,
        "policies": {
            policy.value: orchestrator.chain_selector.tiers(policy) for policy in Policy
        },
    }


@app.post("/api/ai/process-voice")
async def process_voice(request: Request) -> JSONResponse:
    payload = await _read_json_body(request)
    user_input = payload.get("input")
    if not isinstance(user_input, str) or not user_input.strip():
        raise HTTPException(
            status_code=400, detail="Please provide some input about your business"
        )
    history = _history_from(payload, "conversationHistory")
    async with request_cancellation(request) as token:
        result = await process_onboarding_input(
            _orchestrator(), user_input.strip(), history, token
        )
    return _to_response(result)


@app.post("/api/ai/suggest-reply")
async def suggest_reply(request: Request) -> JSONResponse:
    payload = await _read_json_body(request)
    if not isinstance(payload.get("conversationHistory"), list):
        raise HTTPException(status_code=400, detail="Conversation history is required")
    history = _history_from(payload, "conversationHistory")
    draft = payload.get("draft") or ""
    workspace_name = payload.get("workspaceName") or app.state.settings.default_workspace_name
    async with request_cancellation(request) as token:
        result = await generate_smart_reply(
            _orchestrator(), str(draft), history, str(workspace_name), token
        )
    return _to_response(result)


@app.post("/api/ai/insights")
async def insights(request: Request) -> JSONResponse:
    payload = await _read_json_body(request)
    business_data = payload.get("businessData")
    if not isinstance(business_data, dict) or not business_data:
        raise HTTPException(status_code=400, detail="Business data is required")
    async with request_cancellation(request) as token:
        result = await generate_dashboard_insights(_orchestrator(), business_data, token)
    return _to_response(result)


@app.post("/api/ai/booking-assistant")
async def booking_assistant(request: Request) -> JSONResponse:
    payload = await _read_json_body(request)
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    history = _history_from(payload, "history")
    raw_context = payload.get("context")
    context = BookingContext.model_validate(
        raw_context if isinstance(raw_context, dict) else {}
    )
    async with request_cancellation(request) as token:
        result = await process_booking_assistant(
            _orchestrator(), message.strip(), history, context, token
        )
    return _to_response(result)


def run(argv: list[str] | None = None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(description="Run the CareOps AI router API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)
    uvicorn.run(
        "careops_router.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )
