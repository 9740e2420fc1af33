from __future__ import annotations

from enum import Enum

from careops_router.config import RouterProfile
from careops_router.endpoints import EndpointIdentity


class Policy(str, Enum):
    QUALITY_FIRST = "quality-first"
    LATENCY_FIRST = "latency-first"

    @classmethod
    def parse(cls, token: str | Policy) -> Policy:
        if isinstance(token, Policy):
            return token
        normalized = str(token).strip().lower().replace("_", "-")
        for policy in cls:
            if policy.value == normalized:
                return policy
        raise ValueError(f"Unknown routing policy '{token}'.")


class ChainSelector:
    def __init__(self, profile: RouterProfile, credential_slots: int) -> None:
        if credential_slots < 1:
            raise ValueError("At least one credential slot is required.")
        self._profile = profile
        self._credential_slots = credential_slots

    @property
    def credential_slots(self) -> int:
        return self._credential_slots

    def tiers(self, policy: Policy | str) -> list[str]:
        resolved = Policy.parse(policy)
        tiers = self._profile.tiers_for(resolved.value)
        if resolved is Policy.LATENCY_FIRST:
            tiers = [tier for tier in tiers if not tier.deliberate]
        return [tier.name for tier in tiers]

    def build_chain(self, policy: Policy | str) -> list[EndpointIdentity]:
        # All credential slots of a tier come before the next tier.
        return [
            EndpointIdentity(model_tier=tier, credential_slot=slot)
            for tier in self.tiers(policy)
            for slot in range(1, self._credential_slots + 1)
        ]
