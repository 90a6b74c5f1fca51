"""Strip deny-listed keys from arbitrary JSON values.

Tool results come from code outside this package and may carry internal
fields (``__typename``, ``$ref``, ``_password_hash``...).  ``scrub_json``
walks the value as a tagged tree and rebuilds it without keys that start
with a deny-listed prefix.  Non-JSON leaves are converted to strings.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Union

JsonScalar = Union[str, int, float, bool, None]
JsonValue = Union[JsonScalar, list["JsonValue"], dict[str, "JsonValue"]]

DEFAULT_DENIED_KEY_PREFIXES: tuple[str, ...] = ("__", "$", "_")


class JsonKind(Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


@dataclass(frozen=True)
class JsonNode:
    kind: JsonKind
    value: Any


def tag(value: Any) -> JsonNode:
    """Classify a Python value as a JSON node."""
    if value is None:
        return JsonNode(JsonKind.NULL, None)
    if isinstance(value, bool):
        return JsonNode(JsonKind.BOOL, value)
    if isinstance(value, int | float):
        return JsonNode(JsonKind.NUMBER, value)
    if isinstance(value, Decimal):
        return JsonNode(JsonKind.NUMBER, float(value))
    if isinstance(value, str):
        return JsonNode(JsonKind.STRING, value)
    if isinstance(value, datetime | date):
        return JsonNode(JsonKind.STRING, value.isoformat())
    if isinstance(value, Enum):
        return tag(value.value)
    if isinstance(value, dict):
        return JsonNode(JsonKind.OBJECT, value)
    if isinstance(value, list | tuple | set | frozenset):
        return JsonNode(JsonKind.ARRAY, list(value))
    return JsonNode(JsonKind.STRING, str(value))


def scrub_json(
    value: Any,
    denied_prefixes: tuple[str, ...] = DEFAULT_DENIED_KEY_PREFIXES,
) -> JsonValue:
    node = tag(value)
    if node.kind is JsonKind.OBJECT:
        return {
            str(key): scrub_json(child, denied_prefixes)
            for key, child in node.value.items()
            if not str(key).startswith(denied_prefixes)
        }
    if node.kind is JsonKind.ARRAY:
        return [scrub_json(child, denied_prefixes) for child in node.value]
    return node.value
