from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar
from uuid import uuid4

from careops_router.chain import ChainSelector, Policy
from careops_router.conversation import Turn, normalize
from careops_router.cooldown import COOLDOWN_SECONDS, CooldownRegistry
from careops_router.endpoints import EndpointIdentity
from careops_router.errors import Action, BackendError, ErrorKind, classify
from careops_router.transport import GenerationRequest, Transport
from careops_router.validation import ResponseShape, to_backend_schema, validate

logger = logging.getLogger("uvicorn.error")

ShapeT = TypeVar("ShapeT", bound=ResponseShape)

MAX_ATTEMPTS_PER_ENDPOINT = 2


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True, slots=True)
class Success:
    payload: ResponseShape
    used_endpoint: EndpointIdentity

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Failure:
    kind: ErrorKind
    tried_endpoints: tuple[EndpointIdentity, ...] = ()

    @property
    def ok(self) -> bool:
        return False


InvocationResult = Success | Failure


@dataclass(frozen=True, slots=True)
class PolicyTimeouts:
    latency_first_seconds: float = 8.0
    quality_first_seconds: float = 90.0

    def for_policy(self, policy: Policy) -> float:
        if policy is Policy.LATENCY_FIRST:
            return self.latency_first_seconds
        return self.quality_first_seconds


@dataclass(slots=True)
class DispatchStats:
    tried: list[EndpointIdentity] = field(default_factory=list)
    skipped_cooling: int = 0
    attempts: int = 0


@dataclass(slots=True)
class _AttemptOutcome:
    kind: ErrorKind | None
    payload: ResponseShape | None = None
    detail: str | None = None


class DispatchOrchestrator:
    def __init__(
        self,
        *,
        transport: Transport,
        chain_selector: ChainSelector,
        cooldowns: CooldownRegistry,
        timeouts: PolicyTimeouts | None = None,
        max_attempts_per_endpoint: int = MAX_ATTEMPTS_PER_ENDPOINT,
        transient_retry_delay_seconds: float = 0.0,
        audit_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self._transport = transport
        self._chain_selector = chain_selector
        self._cooldowns = cooldowns
        self._timeouts = timeouts or PolicyTimeouts()
        self._max_attempts = max(1, int(max_attempts_per_endpoint))
        self._transient_retry_delay = max(0.0, float(transient_retry_delay_seconds))
        self._audit_hook = audit_hook

    @property
    def cooldowns(self) -> CooldownRegistry:
        return self._cooldowns

    @property
    def chain_selector(self) -> ChainSelector:
        return self._chain_selector

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def dispatch(
        self,
        conversation: Iterable[Turn | Mapping[str, Any]] | None,
        new_input: str,
        policy: Policy | str,
        shape: type[ShapeT],
        cancel: CancellationToken | None = None,
        *,
        system_instruction: str | None = None,
        max_output_tokens: int = 4096,
        request_id: str | None = None,
    ) -> InvocationResult:
        resolved_policy = Policy.parse(policy)
        token = cancel or CancellationToken()
        rid = request_id or uuid4().hex[:12]
        chain = self._chain_selector.build_chain(resolved_policy)
        request = GenerationRequest(
            conversation=normalize(conversation),
            new_input=new_input,
            system_instruction=system_instruction,
            response_schema=to_backend_schema(shape),
            max_output_tokens=max_output_tokens,
        )
        timeout_seconds = self._timeouts.for_policy(resolved_policy)
        stats = DispatchStats()
        started = time.perf_counter()

        logger.info(
            "dispatch_start request_id=%s policy=%s chain=%d shape=%s cooldowns=%s",
            rid,
            resolved_policy.value,
            len(chain),
            shape.__name__,
            self._cooldowns.describe(),
        )

        for endpoint in chain:
            if token.cancelled:
                return self._cancelled(rid, stats)

            if not self._cooldowns.is_eligible(endpoint):
                stats.skipped_cooling += 1
                logger.info(
                    "dispatch_skip_cooling request_id=%s endpoint=%s remaining_s=%.1f",
                    rid,
                    endpoint.label,
                    self._cooldowns.remaining(endpoint),
                )
                continue

            stats.tried.append(endpoint)
            outcome = await self._walk_endpoint(
                endpoint=endpoint,
                request=request,
                shape=shape,
                timeout_seconds=timeout_seconds,
                token=token,
                request_id=rid,
                stats=stats,
            )
            if outcome.kind is None and outcome.payload is not None:
                logger.info(
                    "dispatch_success request_id=%s endpoint=%s attempts=%d latency_ms=%.2f",
                    rid,
                    endpoint.label,
                    stats.attempts,
                    (time.perf_counter() - started) * 1000.0,
                )
                self._audit(
                    "dispatch_success",
                    request_id=rid,
                    policy=resolved_policy.value,
                    endpoint=endpoint.label,
                    tried=[item.label for item in stats.tried],
                    attempts=stats.attempts,
                    skipped_cooling=stats.skipped_cooling,
                )
                return Success(payload=outcome.payload, used_endpoint=endpoint)
            if outcome.kind is ErrorKind.CANCELLED:
                return self._cancelled(rid, stats)

        logger.error(
            (
                "dispatch_exhausted request_id=%s policy=%s tried=%s "
                "chain=%d skipped_cooling=%d cooldowns=%s"
            ),
            rid,
            resolved_policy.value,
            ",".join(item.label for item in stats.tried),
            len(chain),
            stats.skipped_cooling,
            self._cooldowns.describe(),
        )
        self._audit(
            "dispatch_exhausted",
            request_id=rid,
            policy=resolved_policy.value,
            tried=[item.label for item in stats.tried],
            chain_total=len(chain),
            skipped_cooling=stats.skipped_cooling,
        )
        return Failure(
            kind=ErrorKind.EXHAUSTED_ALL_ENDPOINTS, tried_endpoints=tuple(stats.tried)
        )

    def _cancelled(self, request_id: str, stats: DispatchStats) -> Failure:
        logger.info(
            "dispatch_cancelled request_id=%s tried=%s",
            request_id,
            ",".join(item.label for item in stats.tried),
        )
        self._audit(
            "dispatch_cancelled",
            request_id=request_id,
            tried=[item.label for item in stats.tried],
        )
        return Failure(kind=ErrorKind.CANCELLED, tried_endpoints=tuple(stats.tried))

    async def _walk_endpoint(
        self,
        *,
        endpoint: EndpointIdentity,
        request: GenerationRequest,
        shape: type[ShapeT],
        timeout_seconds: float,
        token: CancellationToken,
        request_id: str,
        stats: DispatchStats,
    ) -> _AttemptOutcome:
        outcome = _AttemptOutcome(kind=ErrorKind.BACKEND_REJECTED)
        for attempt in range(1, self._max_attempts + 1):
            if token.cancelled:
                return _AttemptOutcome(kind=ErrorKind.CANCELLED)

            stats.attempts += 1
            logger.info(
                "dispatch_attempt request_id=%s endpoint=%s attempt=%d/%d",
                request_id,
                endpoint.label,
                attempt,
                self._max_attempts,
            )
            outcome = await self._attempt(
                endpoint=endpoint,
                request=request,
                shape=shape,
                timeout_seconds=timeout_seconds,
                token=token,
            )
            if outcome.kind is None:
                return outcome

            action = classify(outcome.kind, attempt, self._max_attempts)
            self._audit(
                "dispatch_attempt_failed",
                request_id=request_id,
                endpoint=endpoint.label,
                attempt=attempt,
                kind=outcome.kind.value,
                action=action.value,
                detail=outcome.detail,
            )
            if action is Action.ABORT:
                return outcome
            if action is Action.COOL_AND_SKIP:
                self._cooldowns.mark_cooling(endpoint, COOLDOWN_SECONDS)
                logger.info(
                    "dispatch_rate_limited request_id=%s endpoint=%s cooldown_s=%.0f",
                    request_id,
                    endpoint.label,
                    COOLDOWN_SECONDS,
                )
                return outcome
            if action is Action.SKIP:
                logger.warning(
                    "dispatch_endpoint_failed request_id=%s endpoint=%s kind=%s detail=%s",
                    request_id,
                    endpoint.label,
                    outcome.kind.value,
                    outcome.detail,
                )
                return outcome

            logger.info(
                "dispatch_retry request_id=%s endpoint=%s kind=%s detail=%s",
                request_id,
                endpoint.label,
                outcome.kind.value,
                outcome.detail,
            )
            if (
                outcome.kind is ErrorKind.TRANSIENT_UNAVAILABLE
                and self._transient_retry_delay > 0
            ):
                try:
                    await asyncio.wait_for(token.wait(), self._transient_retry_delay)
                except TimeoutError:
                    pass
        return outcome

    async def _attempt(
        self,
        *,
        endpoint: EndpointIdentity,
        request: GenerationRequest,
        shape: type[ShapeT],
        timeout_seconds: float,
        token: CancellationToken,
    ) -> _AttemptOutcome:
        call = asyncio.create_task(self._transport.generate(endpoint, request))
        cancel_waiter = asyncio.create_task(token.wait())
        timed_out = False
        try:
            async with asyncio.timeout(timeout_seconds):
                await asyncio.wait(
                    {call, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
        except TimeoutError:
            timed_out = True
        finally:
            cancel_waiter.cancel()
            if not call.done():
                # Aborts the in-flight HTTP request instead of leaving it running.
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)

        if timed_out:
            return _AttemptOutcome(
                kind=ErrorKind.TRANSIENT_UNAVAILABLE,
                detail=f"attempt timed out after {timeout_seconds:.1f}s",
            )
        if call.cancelled():
            return _AttemptOutcome(kind=ErrorKind.CANCELLED)

        exc = call.exception()
        if isinstance(exc, BackendError):
            return _AttemptOutcome(kind=exc.kind, detail=exc.message)
        if isinstance(exc, TimeoutError):
            return _AttemptOutcome(
                kind=ErrorKind.TRANSIENT_UNAVAILABLE, detail="transport timed out"
            )
        if exc is not None:
            raise exc

        try:
            payload = validate(call.result(), shape)
        except BackendError as malformed:
            return _AttemptOutcome(kind=malformed.kind, detail=malformed.message)
        return _AttemptOutcome(kind=None, payload=payload)
