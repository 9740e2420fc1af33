from __future__ import annotations

from enum import Enum

RATE_LIMIT_STATUSES = frozenset({429})
TRANSIENT_STATUSES = frozenset({408, 500, 502, 503, 504})

# Compatibility shim for backends that only surface failures as text. Status
# codes win whenever the transport exposes one.
_RATE_LIMIT_MARKERS = ("429", "quota", "resource_exhausted", "rate limit")
_TRANSIENT_MARKERS = (
    "503",
    "service unavailable",
    "overloaded",
    "high demand",
    "unavailable",
    "deadline exceeded",
)


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT_UNAVAILABLE = "transient_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    BACKEND_REJECTED = "backend_rejected"
    CANCELLED = "cancelled"
    EXHAUSTED_ALL_ENDPOINTS = "exhausted_all_endpoints"


class Action(str, Enum):
    RETRY_SAME = "retry_same"
    SKIP = "skip"
    COOL_AND_SKIP = "cool_and_skip"
    ABORT = "abort"


class BackendError(Exception):
    kind: ErrorKind = ErrorKind.BACKEND_REJECTED

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RateLimitedError(BackendError):
    kind = ErrorKind.RATE_LIMITED


class TransientUnavailableError(BackendError):
    kind = ErrorKind.TRANSIENT_UNAVAILABLE


class MalformedResponseError(BackendError):
    kind = ErrorKind.MALFORMED_RESPONSE


class BackendRejectedError(BackendError):
    kind = ErrorKind.BACKEND_REJECTED


_ERRORS_BY_KIND: dict[ErrorKind, type[BackendError]] = {
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.TRANSIENT_UNAVAILABLE: TransientUnavailableError,
    ErrorKind.MALFORMED_RESPONSE: MalformedResponseError,
    ErrorKind.BACKEND_REJECTED: BackendRejectedError,
}


def classify_status(status_code: int | None, message: str | None = None) -> ErrorKind:
    if status_code is not None:
        if status_code in RATE_LIMIT_STATUSES:
            return ErrorKind.RATE_LIMITED
        if status_code in TRANSIENT_STATUSES or status_code >= 500:
            return ErrorKind.TRANSIENT_UNAVAILABLE
        return ErrorKind.BACKEND_REJECTED

    text = (message or "").lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT_UNAVAILABLE
    return ErrorKind.BACKEND_REJECTED


def error_for(
    status_code: int | None, message: str | None = None
) -> BackendError:
    kind = classify_status(status_code, message)
    error_cls = _ERRORS_BY_KIND[kind]
    return error_cls(message or f"backend returned status {status_code}", status_code=status_code)


def classify(kind: ErrorKind, attempt: int, max_attempts: int) -> Action:
    if kind is ErrorKind.RATE_LIMITED:
        return Action.COOL_AND_SKIP
    if kind in (ErrorKind.TRANSIENT_UNAVAILABLE, ErrorKind.MALFORMED_RESPONSE):
        return Action.RETRY_SAME if attempt < max_attempts else Action.SKIP
    if kind is ErrorKind.BACKEND_REJECTED:
        return Action.SKIP
    return Action.ABORT
