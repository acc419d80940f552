"""
Data conversion between native Python values and stored values.

The typed (native) representation uses ``datetime`` for points in time
and arbitrary nesting of dicts and lists. The storage representation
replaces datetimes with fixed-point ``Timestamp`` values and keeps only
JSON-compatible scalars.

Conversion rules (to storage):
    - datetime            -> Timestamp
    - Timestamp           -> unchanged (idempotent)
    - dict / Mapping      -> dict, keys whose value is absent are dropped
    - list / tuple        -> list, absent elements are dropped
    - str/int/float/bool  -> unchanged
    - None                -> null (inside a document)
    - UNSET / callables   -> absent
    - anything else       -> CodecError

Backends that persist to text use ``dumps``/``loads``, which tag
timestamps as ``{"__timestamp__": [seconds, nanoseconds]}``. That key is
reserved and rejected in user data.

Invariants:
    - from_storage(to_storage(x)) == x for supported values
      (aware UTC datetimes, microsecond precision)
    - to_storage never returns None for a top-level document
    - Codec failures happen before any persistence I/O
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from .errors import CodecError
from .timestamp import Timestamp
from .transforms import ArrayRemove, ArrayUnion, DeleteField, FieldTransform

TIMESTAMP_TAG = "__timestamp__"


class _Unset:
    """Sentinel for an explicitly absent value."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()
_ABSENT = object()


def _convert(value: Any, field_path: str, allow_transforms: bool) -> Any:
    if value is UNSET or callable(value) and not isinstance(value, FieldTransform):
        return _ABSENT
    if value is None or isinstance(value, (str, bool, int, float, Timestamp)):
        return value
    if isinstance(value, datetime):
        return Timestamp.from_datetime(value)
    if isinstance(value, date):
        raise CodecError(
            f"Field '{field_path}' holds a date without time; use datetime",
            field_path=field_path,
            value_type=type(value).__name__,
        )
    if isinstance(value, FieldTransform):
        if not allow_transforms:
            raise CodecError(
                f"Field transform not allowed at '{field_path}'",
                field_path=field_path,
                value_type=type(value).__name__,
            )
        if isinstance(value, ArrayUnion):
            return ArrayUnion(tuple(_convert_list(value.values, field_path)))
        if isinstance(value, ArrayRemove):
            return ArrayRemove(tuple(_convert_list(value.values, field_path)))
        return value
    if isinstance(value, Mapping):
        return _convert_map(value, field_path)
    if isinstance(value, (list, tuple)):
        return _convert_list(value, field_path)

    raise CodecError(
        f"Unsupported value at '{field_path or '<root>'}': {type(value).__name__}",
        field_path=field_path,
        value_type=type(value).__name__,
    )


def _convert_map(value: Mapping[Any, Any], field_path: str) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise CodecError(
                f"Field names must be strings, got {type(key).__name__} at '{field_path}'",
                field_path=field_path,
                value_type=type(key).__name__,
            )
        if key == TIMESTAMP_TAG:
            raise CodecError(f"Field name '{TIMESTAMP_TAG}' is reserved", field_path=key)
        child_path = f"{field_path}.{key}" if field_path else key
        converted = _convert(item, child_path, allow_transforms=False)
        if converted is not _ABSENT:
            result[key] = converted
    return result


def _convert_list(value: Any, field_path: str) -> list[Any]:
    result = []
    for i, item in enumerate(value):
        converted = _convert(item, f"{field_path}[{i}]", allow_transforms=False)
        if converted is not _ABSENT:
            result.append(converted)
    return result


def to_storage(value: Any) -> Any:
    """Convert a native value to its storage representation.

    Args:
        value: Native value (document mapping, list or scalar)

    Returns:
        Storage value; an empty dict for a None/UNSET top-level input

    Raises:
        CodecError: If the value holds an unsupported type
    """
    if value is None or value is UNSET:
        return {}
    converted = _convert(value, "", allow_transforms=False)
    return {} if converted is _ABSENT else converted


def to_storage_value(value: Any) -> Any:
    """Convert a single value (e.g. a query operand) to storage form.

    Unlike to_storage, None stays None.

    Raises:
        CodecError: If the value holds an unsupported type
    """
    converted = _convert(value, "", allow_transforms=False)
    return None if converted is _ABSENT else converted


def encode_document(data: Mapping[str, Any] | None, allow_transforms: bool = False) -> dict[str, Any]:
    """Convert document fields to storage form.

    Top-level field transforms are kept (for the store to resolve) when
    ``allow_transforms`` is set; ``delete_field()`` is only meaningful in
    merging writes.

    Raises:
        CodecError: If data is not a mapping or holds unsupported values
    """
    if data is None or data is UNSET:
        return {}
    if not isinstance(data, Mapping):
        raise CodecError(
            f"Document data must be a mapping, got {type(data).__name__}",
            value_type=type(data).__name__,
        )

    result: dict[str, Any] = {}
    for key, item in data.items():
        if not isinstance(key, str):
            raise CodecError(
                f"Field names must be strings, got {type(key).__name__}",
                value_type=type(key).__name__,
            )
        if key == TIMESTAMP_TAG:
            raise CodecError(f"Field name '{TIMESTAMP_TAG}' is reserved", field_path=key)
        converted = _convert(item, key, allow_transforms=allow_transforms)
        if isinstance(converted, DeleteField) and not allow_transforms:
            raise CodecError("delete_field() requires a merging write", field_path=key)
        if converted is not _ABSENT:
            result[key] = converted
    return result


def from_storage(value: Any, doc_id: str | None = None) -> Any:
    """Convert a storage value back to native form.

    Args:
        value: Storage value
        doc_id: If given and the value is a mapping, added as its ``id`` key

    Returns:
        Native value with Timestamps replaced by aware UTC datetimes
    """
    if isinstance(value, Timestamp):
        return value.to_datetime()
    if isinstance(value, dict):
        result = {key: from_storage(item) for key, item in value.items()}
        if doc_id is not None:
            result["id"] = doc_id
        return result
    if isinstance(value, list):
        return [from_storage(item) for item in value]
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Timestamp):
        return {TIMESTAMP_TAG: [value.seconds, value.nanoseconds]}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_object_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1 and TIMESTAMP_TAG in obj:
        seconds, nanoseconds = obj[TIMESTAMP_TAG]
        return Timestamp(seconds=seconds, nanoseconds=nanoseconds)
    return obj


def dumps(value: Any) -> str:
    """Serialize a storage value to JSON text."""
    try:
        return json.dumps(value, default=_json_default, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise CodecError(f"Failed to serialize value: {e}")


def loads(text: str | bytes) -> Any:
    """Deserialize JSON text produced by ``dumps``."""
    try:
        return json.loads(text, object_hook=_json_object_hook)
    except json.JSONDecodeError as e:
        raise CodecError(f"Failed to parse stored value: {e}")
