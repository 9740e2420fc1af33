from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

ROUTING_POLICIES = ("quality-first", "latency-first")
LATENCY_POLICY = "latency-first"


class TierConfig(BaseModel):
    name: str
    deliberate: bool = False
    description: str | None = None


class RouterProfile(BaseModel):
    tiers: list[TierConfig] = Field(default_factory=list)
    policies: dict[str, list[str]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_policies(self) -> RouterProfile:
        known = {tier.name for tier in self.tiers}
        if len(known) != len(self.tiers):
            raise ValueError("Tier names must be unique.")
        missing = [name for name in ROUTING_POLICIES if name not in self.policies]
        if missing:
            raise ValueError(f"Profile must define policies: {', '.join(missing)}")
        for policy, tier_names in self.policies.items():
            if not tier_names:
                raise ValueError(f"Policy '{policy}' lists no tiers.")
            unknown = [name for name in tier_names if name not in known]
            if unknown:
                raise ValueError(
                    f"Policy '{policy}' references unknown tiers: {', '.join(unknown)}"
                )
        by_name = {tier.name: tier for tier in self.tiers}
        if all(by_name[name].deliberate for name in self.policies[LATENCY_POLICY]):
            raise ValueError(
                f"Policy '{LATENCY_POLICY}' needs at least one non-deliberate tier."
            )
        return self

    def tier(self, name: str) -> TierConfig:
        for tier in self.tiers:
            if tier.name == name:
                return tier
        raise KeyError(name)

    def tiers_for(self, policy: str) -> list[TierConfig]:
        names = self.policies.get(policy)
        if names is None:
            raise KeyError(policy)
        return [self.tier(name) for name in names]


DEFAULT_PROFILE: dict[str, Any] = {
    "tiers": [
        {"name": "gemini-2.5-flash", "description": "fast, high quality"},
        {"name": "gemini-2.5-flash-lite", "description": "faster, good quality"},
        {"name": "gemini-2.0-flash", "description": "reliable fallback"},
        {"name": "gemini-2.0-flash-lite", "description": "fastest fallback"},
        {
            "name": "gemini-3-flash-preview",
            "deliberate": True,
            "description": "thinking model, slow but best reasoning",
        },
    ],
    "policies": {
        "quality-first": [
            "gemini-2.5-flash",
            "gemini-2.5-flash-lite",
            "gemini-2.0-flash",
            "gemini-2.0-flash-lite",
            "gemini-3-flash-preview",
        ],
        "latency-first": [
            "gemini-2.5-flash-lite",
            "gemini-2.0-flash-lite",
            "gemini-2.5-flash",
            "gemini-2.0-flash",
        ],
    },
}


def default_router_profile() -> RouterProfile:
    return RouterProfile.model_validate(DEFAULT_PROFILE)


def load_router_profile(config_path: str | None) -> RouterProfile:
    if not config_path:
        return default_router_profile()

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Router profile not found at '{config_path}'. "
            "Create it or unset ROUTER_PROFILE_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return RouterProfile.model_validate(raw)
