from __future__ import annotations

from typing import Any

import pytest

from careops_router.conversation import Turn, normalize


def _pairs(turns: list[Turn]) -> list[tuple[str, str]]:
    return [(turn.role, turn.content) for turn in turns]


def test_leading_assistant_dropped_and_same_role_merged() -> None:
    history = [
        {"role": "assistant", "content": "hi"},
        {"role": "user", "content": "hello"},
        {"role": "user", "content": "how are you"},
    ]
    assert _pairs(normalize(history)) == [
        ("user", "hello\n\n(Follow-up): how are you")
    ]


def test_history_without_user_turn_normalizes_to_empty() -> None:
    assert normalize([{"role": "assistant", "content": "Welcome!"}]) == []
    assert normalize([]) == []
    assert normalize(None) == []


def test_model_role_is_treated_as_assistant() -> None:
    history = [
        {"role": "user", "content": "I run a salon"},
        {"role": "model", "content": "What services?"},
        {"role": "ai", "content": "And your hours?"},
        {"role": "user", "content": "Haircuts"},
    ]
    assert _pairs(normalize(history)) == [
        ("user", "I run a salon"),
        ("assistant", "What services?\n\n(Follow-up): And your hours?"),
        ("user", "Haircuts"),
    ]


def test_blank_turns_are_dropped_before_merging() -> None:
    history = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "   "},
        {"role": "user", "content": "second"},
        {"role": "assistant", "content": None},
    ]
    assert _pairs(normalize(history)) == [("user", "first\n\n(Follow-up): second")]


def test_accepts_turn_instances_and_leaves_input_untouched() -> None:
    history = [Turn(role="user", content="a"), Turn(role="user", content="b")]
    normalized = normalize(history)

    assert _pairs(normalized) == [("user", "a\n\n(Follow-up): b")]
    assert _pairs(history) == [("user", "a"), ("user", "b")]


@pytest.mark.parametrize(
    "history",
    [
        [],
        [{"role": "assistant", "content": "x"}],
        [{"role": "user", "content": "x"}, {"role": "user", "content": "y"}],
        [
            {"role": "assistant", "content": "x"},
            {"role": "user", "content": "y"},
            {"role": "assistant", "content": "z"},
            {"role": "assistant", "content": "w"},
            {"role": "user", "content": ""},
            {"role": "user", "content": "v"},
        ],
    ],
)
def test_normalize_is_idempotent(history: list[dict[str, Any]]) -> None:
    once = normalize(history)
    assert normalize(once) == once
    assert all(a.role != b.role for a, b in zip(once, once[1:]))
    assert not once or once[0].role == "user"
