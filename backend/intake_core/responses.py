"""Total accessors over patient-supplied intake responses.

Responses are arbitrary JSON, restricted to the shape
None | bool | int | float | str | list[...] | dict[str, ...].
Forms send either camelCase or snake_case keys, so every lookup accepts both.
"""

from __future__ import annotations

import math
import re
from typing import Any, Union

from .errors import InvalidInput

JsonValue = Union[None, bool, int, float, str, list["JsonValue"], dict[str, "JsonValue"]]

_LIST_SPLIT_RE = re.compile(r"[,;\n]+")
_MAX_DEPTH = 12


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _check_value(value: Any, path: str, depth: int) -> None:
    if depth > _MAX_DEPTH:
        raise InvalidInput(f"Responses are nested too deeply at '{path}'.")
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise InvalidInput(f"Non-finite number at '{path}'.")
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            _check_value(item, f"{path}[{index}]", depth + 1)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidInput(f"Non-string key at '{path}'.")
            _check_value(item, f"{path}.{key}", depth + 1)
        return
    raise InvalidInput(f"Unsupported value type at '{path}'.")


def validate_responses(responses: Any) -> dict[str, JsonValue]:
    if not isinstance(responses, dict):
        raise InvalidInput("Responses must be a JSON object.")
    _check_value(responses, "responses", 0)
    return responses


def field_value(responses: dict[str, JsonValue], *names: str) -> JsonValue:
    for name in names:
        for key in (name, _camel(name)):
            value = responses.get(key)
            if value not in (None, "", [], {}):
                return value
    return None


def flatten_text(value: JsonValue) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return ", ".join(part for part in (flatten_text(item) for item in value) if part)
    parts = []
    for key, item in value.items():
        text = flatten_text(item)
        if text:
            parts.append(f"{key}: {text}")
    return "; ".join(parts)


def text_field(responses: dict[str, JsonValue], *names: str) -> str:
    return flatten_text(field_value(responses, *names))


def list_field(responses: dict[str, JsonValue], *names: str) -> list[JsonValue]:
    value = field_value(responses, *names)
    if value is None:
        return []
    if isinstance(value, list):
        return [item for item in value if item not in (None, "")]
    if isinstance(value, str):
        return [part.strip() for part in _LIST_SPLIT_RE.split(value) if part.strip()]
    return [value]


def mapping_field(responses: dict[str, JsonValue], *names: str) -> dict[str, JsonValue]:
    value = field_value(responses, *names)
    return value if isinstance(value, dict) else {}


def item_name(item: JsonValue, *keys: str) -> str:
    if isinstance(item, dict):
        for key in keys:
            value = item.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""
    return flatten_text(item)


def item_text(item: JsonValue, key: str) -> str | None:
    if not isinstance(item, dict):
        return None
    text = flatten_text(item.get(key))
    return text or None
