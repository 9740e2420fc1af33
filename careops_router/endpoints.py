from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class EndpointIdentity:
    model_tier: str
    credential_slot: int

    @property
    def label(self) -> str:
        return f"{self.model_tier}:{self.credential_slot}"

    def __str__(self) -> str:
        return self.label
