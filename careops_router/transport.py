from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from careops_router.conversation import Turn
from careops_router.endpoints import EndpointIdentity
from careops_router.errors import (
    BackendRejectedError,
    MalformedResponseError,
    TransientUnavailableError,
    error_for,
)

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class GenerationRequest:
    conversation: list[Turn]
    new_input: str
    system_instruction: str | None = None
    response_schema: dict[str, Any] | None = None
    max_output_tokens: int = 4096
    extra_generation_config: dict[str, Any] = field(default_factory=dict)


class Transport(Protocol):
    async def generate(
        self, endpoint: EndpointIdentity, request: GenerationRequest
    ) -> str:
        """Send one request and return the raw text payload.

        Raises a ``BackendError`` subclass for classified failures. Must not
        retry on its own.
        """
        ...


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    return {
        "error": error_message,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


def _error_message_from_response(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or f"status {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        status = error.get("status")
        message = error.get("message") or ""
        return f"{status}: {message}" if status else str(message)
    return response.text.strip() or f"status {response.status_code}"


def build_gemini_payload(request: GenerationRequest) -> dict[str, Any]:
    contents = [
        {
            "role": "user" if turn.role == "user" else "model",
            "parts": [{"text": turn.content}],
        }
        for turn in request.conversation
    ]
    contents.append({"role": "user", "parts": [{"text": request.new_input}]})

    generation_config: dict[str, Any] = {
        "responseMimeType": "application/json",
        "maxOutputTokens": request.max_output_tokens,
    }
    if request.response_schema:
        generation_config["responseSchema"] = request.response_schema
    generation_config.update(request.extra_generation_config)

    payload: dict[str, Any] = {
        "contents": contents,
        "generationConfig": generation_config,
    }
    if request.system_instruction:
        payload["systemInstruction"] = {
            "parts": [{"text": request.system_instruction}]
        }
    return payload


def extract_candidate_text(body: Any) -> str:
    if not isinstance(body, dict):
        raise MalformedResponseError("response body is not a JSON object")
    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = body.get("promptFeedback")
        raise MalformedResponseError(f"response has no candidates (feedback={feedback})")
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise MalformedResponseError("first candidate has no content parts")
    text = "".join(
        part.get("text", "") for part in parts if isinstance(part, dict)
    ).strip()
    if not text:
        raise MalformedResponseError("first candidate text is empty")
    return text


class GeminiTransport:
    def __init__(
        self,
        api_keys: list[str],
        *,
        base_url: str = DEFAULT_GEMINI_BASE_URL,
        connect_timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_keys = [key for key in api_keys if key]
        self._base_url = base_url.rstrip("/")
        # Attempt deadlines are enforced by the orchestrator, per policy.
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=None, connect=max(0.1, connect_timeout_seconds)),
            limits=httpx.Limits(max_connections=128, max_keepalive_connections=32),
        )

    @property
    def credential_slots(self) -> int:
        return len(self._api_keys)

    async def close(self) -> None:
        await self.client.aclose()

    def _api_key_for(self, endpoint: EndpointIdentity) -> str:
        index = endpoint.credential_slot - 1
        if index < 0 or index >= len(self._api_keys):
            raise BackendRejectedError(
                f"no credential configured for slot {endpoint.credential_slot}"
            )
        return self._api_keys[index]

    async def generate(
        self, endpoint: EndpointIdentity, request: GenerationRequest
    ) -> str:
        url = f"{self._base_url}/models/{endpoint.model_tier}:generateContent"
        headers = {
            "x-goog-api-key": self._api_key_for(endpoint),
            "content-type": "application/json",
        }
        try:
            response = await self.client.post(
                url, json=build_gemini_payload(request), headers=headers
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "gemini_request_error endpoint=%s error_type=%s is_timeout=%s error=%s",
                endpoint.label,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise TransientUnavailableError(
                f"{details['error_type']}: {details['error']}"
            ) from exc

        if response.status_code >= 400:
            raise error_for(response.status_code, _error_message_from_response(response))

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError("response body is not valid JSON") from exc
        return extract_candidate_text(body)
