from __future__ import annotations

import time
from threading import Lock
from typing import Callable

from careops_router.endpoints import EndpointIdentity

COOLDOWN_SECONDS = 60.0


class CooldownRegistry:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cool_until: dict[EndpointIdentity, float] = {}
        self._lock = Lock()

    def is_eligible(self, endpoint: EndpointIdentity) -> bool:
        return self.remaining(endpoint) <= 0.0

    def remaining(self, endpoint: EndpointIdentity) -> float:
        now = self._clock()
        with self._lock:
            until = self._cool_until.get(endpoint)
            if until is None:
                return 0.0
            if now >= until:
                self._cool_until.pop(endpoint, None)
                return 0.0
            return until - now

    def mark_cooling(
        self, endpoint: EndpointIdentity, duration: float = COOLDOWN_SECONDS
    ) -> float:
        until = self._clock() + max(0.0, float(duration))
        with self._lock:
            current = self._cool_until.get(endpoint, 0.0)
            if until > current:
                self._cool_until[endpoint] = until
            return self._cool_until[endpoint]

    def snapshot(self) -> dict[str, float]:
        now = self._clock()
        with self._lock:
            expired = [key for key, until in self._cool_until.items() if now >= until]
            for key in expired:
                self._cool_until.pop(key, None)
            return {
                key.label: round(until - now, 3)
                for key, until in sorted(
                    self._cool_until.items(), key=lambda item: item[0].label
                )
            }

    def describe(self) -> str:
        active = self.snapshot()
        if not active:
            return "none"
        return ",".join(f"{label}={seconds:.0f}s" for label, seconds in active.items())
