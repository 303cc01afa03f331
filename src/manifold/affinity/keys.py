"""Affinity key extraction from request and response messages.

A key path is a dot-separated list of field names. A segment may also index
into a repeated field, either as a bare number (``sessions.0.name``) or in
brackets (``sessions[0].name``).

Messages are walked through a small set of structured-value shapes:
mappings, sequences, pydantic models, objects implementing ``get_field`` and
plain attribute access. The leaf must be a non-empty string.
"""

import re
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from manifold.errors import KeyNotFound

_BRACKET_SEGMENT = re.compile(r"^(?P<name>[^\[\]]*)((\[\d+\])+)$")
_BRACKET_INDEX = re.compile(r"\[(\d+)\]")

_MISSING = object()


@runtime_checkable
class FieldAccessor(Protocol):
    """Message type that exposes its fields by name.

    Implement this for message classes whose fields are not plain attributes.
    Return None for an unset field.
    """

    def get_field(self, name: str) -> Any: ...


def parse_key_path(key_path: str) -> list[str | int]:
    """Split a key path into field names and repeated-field indexes.

    Raises:
        ValueError: If the path is empty or has an empty segment
    """
    if not key_path:
        raise ValueError("Key path must not be empty")

    segments: list[str | int] = []
    for raw in key_path.split("."):
        if not raw:
            raise ValueError(f"Empty segment in key path '{key_path}'")

        if raw.isdigit():
            segments.append(int(raw))
            continue

        match = _BRACKET_SEGMENT.match(raw)
        if match:
            if match.group("name"):
                segments.append(match.group("name"))
            segments.extend(int(i) for i in _BRACKET_INDEX.findall(raw))
            continue

        if "[" in raw or "]" in raw:
            raise ValueError(f"Malformed segment '{raw}' in key path '{key_path}'")
        segments.append(raw)
    return segments


def extract_key(message: Any, key_path: str) -> str:
    """Resolve a key path against a message.

    Args:
        message: Request or response message
        key_path: Dot-separated field path

    Returns:
        The affinity key

    Raises:
        KeyNotFound: If any segment is unset or out of range, or the leaf is
            not a non-empty string
    """
    try:
        segments = parse_key_path(key_path)
    except ValueError as e:
        raise KeyNotFound(key_path, str(e)) from e

    value = message
    for segment in segments:
        if value is None:
            raise KeyNotFound(key_path, f"unset value before '{segment}'")
        if isinstance(segment, int):
            value = _index(value, segment, key_path)
        else:
            value = _field(value, segment)
            if value is _MISSING:
                raise KeyNotFound(key_path, f"no field '{segment}'")

    if not isinstance(value, str):
        raise KeyNotFound(key_path, f"expected a string, got {type(value).__name__}")
    if not value:
        raise KeyNotFound(key_path, "field is empty")
    return value


def _index(value: Any, index: int, key_path: str) -> Any:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise KeyNotFound(
            key_path, f"cannot index into {type(value).__name__} with [{index}]"
        )
    if index >= len(value):
        raise KeyNotFound(key_path, f"index {index} out of range ({len(value)} items)")
    return value[index]


def _field(value: Any, name: str) -> Any:
    if isinstance(value, Mapping):
        return value.get(name, _MISSING)

    if isinstance(value, BaseModel):
        if name in type(value).model_fields:
            return getattr(value, name)
        for field_name, info in type(value).model_fields.items():
            if info.alias == name:
                return getattr(value, field_name)
        return _MISSING

    if isinstance(value, FieldAccessor):
        return value.get_field(name)

    return getattr(value, name, _MISSING)
