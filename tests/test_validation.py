from __future__ import annotations

import pytest

from careops_router.assistants import BookingReply, OnboardingReply
from careops_router.errors import ErrorKind, MalformedResponseError
from careops_router.validation import ResponseShape, to_backend_schema, validate


class Item(ResponseShape):
    name: str
    price: float | None = None


class Order(ResponseShape):
    ok: bool
    items: list[Item]
    note: str | None = None


def test_validate_parses_matching_payload() -> None:
    order = validate(
        '  {"ok": true, "items": [{"name": "cut", "price": 500}]}\n', Order
    )
    assert order.ok is True
    assert order.items[0].name == "cut"
    assert order.items[0].price == 500.0
    assert order.note is None


@pytest.mark.parametrize(
    "raw",
    [
        "",
        None,
        "not json",
        '{"ok": true}',
        '{"ok": "yes", "items": []}',
        '{"ok": true, "items": [{"price": 1}]}',
        '{"ok": true, "items": [], "extra": 1}',
        '["ok"]',
    ],
)
def test_validate_rejects_any_deviation_as_malformed(raw: str | None) -> None:
    with pytest.raises(MalformedResponseError) as exc_info:
        validate(raw, Order)
    assert exc_info.value.kind is ErrorKind.MALFORMED_RESPONSE
    assert "Order" in exc_info.value.message


def test_validate_accepts_bytes() -> None:
    assert validate(b'{"ok": false, "items": []}', Order).ok is False


def test_backend_schema_marks_required_and_nullable_fields() -> None:
    schema = to_backend_schema(Order)

    assert schema["type"] == "OBJECT"
    assert schema["required"] == ["ok", "items"]
    assert schema["properties"]["ok"] == {"type": "BOOLEAN"}
    assert schema["properties"]["note"] == {"type": "STRING", "nullable": True}
    items = schema["properties"]["items"]
    assert items["type"] == "ARRAY"
    assert items["items"]["properties"]["price"] == {"type": "NUMBER", "nullable": True}
    assert items["items"]["required"] == ["name"]


def test_backend_schema_uses_aliases_and_enums() -> None:
    schema = to_backend_schema(BookingReply)

    assert schema["required"] == ["reply", "action", "data"]
    assert schema["properties"]["action"]["enum"] == [
        "none",
        "select_service",
        "select_time",
        "collect_info",
        "summarize",
        "confirm",
    ]
    assert "serviceId" in schema["properties"]["data"]["properties"]


def test_backend_schema_has_no_json_schema_references() -> None:
    schema = to_backend_schema(OnboardingReply)
    rendered = repr(schema)

    assert "$ref" not in rendered
    assert "$defs" not in rendered
    services = schema["properties"]["data"]["properties"]["services"]
    assert services["type"] == "ARRAY"
    assert services["nullable"] is True
    assert services["items"]["properties"]["duration"]["type"] == "NUMBER"


class Reference(ResponseShape):
    code: int | str
    label: str | None = None


def test_backend_schema_refuses_multi_type_unions() -> None:
    with pytest.raises(ValueError, match="union"):
        to_backend_schema(Reference)
