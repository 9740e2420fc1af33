from __future__ import annotations

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from careops_router.errors import MalformedResponseError

ShapeT = TypeVar("ShapeT", bound="ResponseShape")

_GEMINI_TYPES = {
    "object": "OBJECT",
    "array": "ARRAY",
    "string": "STRING",
    "number": "NUMBER",
    "integer": "INTEGER",
    "boolean": "BOOLEAN",
}


class ResponseShape(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


def _summarize_errors(exc: ValidationError, limit: int = 3) -> str:
    parts: list[str] = []
    for error in exc.errors()[:limit]:
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg')}")
    remaining = exc.error_count() - len(parts)
    if remaining > 0:
        parts.append(f"(+{remaining} more)")
    return "; ".join(parts)


def validate(raw_payload: str | bytes | None, shape: type[ShapeT]) -> ShapeT:
    if raw_payload is None:
        raise MalformedResponseError(f"{shape.__name__}: empty response")
    if isinstance(raw_payload, bytes):
        raw_payload = raw_payload.decode("utf-8", errors="replace")
    text = raw_payload.strip()
    if not text:
        raise MalformedResponseError(f"{shape.__name__}: empty response")
    try:
        return shape.model_validate_json(text)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"{shape.__name__}: {_summarize_errors(exc)}"
        ) from exc


def _convert_schema(node: dict[str, Any], defs: dict[str, Any]) -> dict[str, Any]:
    ref = node.get("$ref")
    if isinstance(ref, str):
        return _convert_schema(defs[ref.rsplit("/", 1)[-1]], defs)

    any_of = node.get("anyOf")
    if isinstance(any_of, list):
        options = [item for item in any_of if item.get("type") != "null"]
        if len(options) > 1:
            raise ValueError(
                "Response schema cannot express a union of several non-null types."
            )
        converted = (
            _convert_schema(options[0], defs) if options else {"type": "STRING"}
        )
        if len(options) < len(any_of):
            converted["nullable"] = True
        if node.get("description"):
            converted["description"] = node["description"]
        return converted

    json_type = node.get("type", "string")
    converted: dict[str, Any] = {"type": _GEMINI_TYPES.get(json_type, "STRING")}
    if node.get("description"):
        converted["description"] = node["description"]
    if "enum" in node:
        converted["type"] = "STRING"
        converted["enum"] = [str(value) for value in node["enum"]]
    if json_type == "array" and isinstance(node.get("items"), dict):
        converted["items"] = _convert_schema(node["items"], defs)
    if json_type == "object":
        properties = node.get("properties") or {}
        converted["properties"] = {
            name: _convert_schema(value, defs) for name, value in properties.items()
        }
        required = node.get("required")
        if required:
            converted["required"] = list(required)
    return converted


def to_backend_schema(shape: type[ResponseShape]) -> dict[str, Any]:
    """Render a shape as the OpenAPI subset accepted as a Gemini response schema."""
    json_schema = shape.model_json_schema()
    return _convert_schema(json_schema, json_schema.get("$defs", {}))
