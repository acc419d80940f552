"""
Field transforms for PathDB writes.

Transforms are sentinel values placed at the top level of an update or
merge-set payload. The store resolves them against the currently stored
document inside the per-document critical section, so concurrent
increments on the same document never lose updates.

Example:
    >>> await store.update("users/u1", {
    ...     "visits": increment(1),
    ...     "tags": array_union("admin"),
    ...     "nickname": delete_field(),
    ...     "seen_at": server_timestamp(),
    ... })
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .timestamp import Timestamp
from .values import values_equal


class FieldTransform:
    """Base class for write-time field transforms."""

    def apply(self, current: Any, exists: bool, now: Timestamp) -> Any:
        raise NotImplementedError


class _Delete:
    """Marker returned by DeleteField.apply."""

    def __repr__(self) -> str:
        return "<DELETE>"


DELETE = _Delete()


@dataclass(frozen=True)
class Increment(FieldTransform):
    amount: int | float

    def apply(self, current: Any, exists: bool, now: Timestamp) -> Any:
        if not exists or isinstance(current, bool) or not isinstance(current, (int, float)):
            return self.amount
        return current + self.amount


@dataclass(frozen=True)
class ArrayUnion(FieldTransform):
    values: tuple[Any, ...]

    def apply(self, current: Any, exists: bool, now: Timestamp) -> Any:
        result = list(current) if exists and isinstance(current, list) else []
        for value in self.values:
            if not any(values_equal(value, item) for item in result):
                result.append(value)
        return result


@dataclass(frozen=True)
class ArrayRemove(FieldTransform):
    values: tuple[Any, ...]

    def apply(self, current: Any, exists: bool, now: Timestamp) -> Any:
        if not exists or not isinstance(current, list):
            return []
        return [
            item for item in current if not any(values_equal(item, v) for v in self.values)
        ]


@dataclass(frozen=True)
class DeleteField(FieldTransform):
    def apply(self, current: Any, exists: bool, now: Timestamp) -> Any:
        return DELETE


@dataclass(frozen=True)
class ServerTimestamp(FieldTransform):
    def apply(self, current: Any, exists: bool, now: Timestamp) -> Any:
        return now


def increment(amount: int | float) -> Increment:
    """Add ``amount`` to a numeric field (missing or non-numeric counts as 0)."""
    return Increment(amount)


def array_union(*values: Any) -> ArrayUnion:
    """Append each value not already present in an array field."""
    return ArrayUnion(tuple(values))


def array_remove(*values: Any) -> ArrayRemove:
    """Remove every occurrence of each value from an array field."""
    return ArrayRemove(tuple(values))


def delete_field() -> DeleteField:
    """Remove the field from the document."""
    return DeleteField()


def server_timestamp() -> ServerTimestamp:
    """Replace the field with the commit timestamp."""
    return ServerTimestamp()


def apply_patch(
    existing: dict[str, Any],
    patch: dict[str, Any],
    now: Timestamp,
) -> dict[str, Any]:
    """Shallow-merge a storage-form patch into a stored document.

    Only top-level keys are merged; nested mappings in the patch replace
    the stored value wholesale. Transforms are evaluated against the
    stored value of the same key.

    Args:
        existing: Current stored fields (not modified)
        patch: Storage-form fields, possibly holding transforms
        now: Commit timestamp for server_timestamp()

    Returns:
        New field mapping
    """
    merged = dict(existing)
    for key, value in patch.items():
        if isinstance(value, FieldTransform):
            value = value.apply(merged.get(key), key in merged, now)
            if value is DELETE:
                merged.pop(key, None)
                continue
        merged[key] = value
    return merged
