from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator

FOLLOW_UP_SEPARATOR = "\n\n(Follow-up): "

Role = Literal["user", "assistant"]


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> str:
        # Histories from the browser use "model" or "ai" for the assistant side.
        if isinstance(value, str) and value.strip().lower() == "user":
            return "user"
        return "assistant"

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> str:
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)


def _as_turn(item: Turn | Mapping[str, Any]) -> Turn:
    if isinstance(item, Turn):
        return item
    return Turn.model_validate(
        {"role": item.get("role"), "content": item.get("content")}
    )


def normalize(history: Iterable[Turn | Mapping[str, Any]] | None) -> list[Turn]:
    # Total over any input: blank turns, then leading non-user turns, are dropped.
    turns = [_as_turn(item) for item in history or ()]
    turns = [turn for turn in turns if turn.content.strip()]

    first_user = next(
        (index for index, turn in enumerate(turns) if turn.role == "user"), None
    )
    if first_user is None:
        return []

    normalized: list[Turn] = []
    for turn in turns[first_user:]:
        if normalized and normalized[-1].role == turn.role:
            previous = normalized[-1]
            normalized[-1] = Turn(
                role=previous.role,
                content=f"{previous.content}{FOLLOW_UP_SEPARATOR}{turn.content}",
            )
        else:
            normalized.append(turn)
    return normalized
