"""
Ordering and equality over storage-form values.

Values of different types never compare equal, and sort by type first:

    null < boolean < number < timestamp < string < array < map

Invariants:
    - True and 1 are different values (booleans rank below numbers)
    - Integers and floats share one rank, so 1 == 1.0
    - Maps compare by sorted keys, then values
"""

from __future__ import annotations

from typing import Any

from .timestamp import Timestamp


def type_rank(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, Timestamp):
        return 3
    if isinstance(value, str):
        return 4
    if isinstance(value, list):
        return 5
    return 6


def sort_key(value: Any) -> tuple[Any, ...]:
    """Total-order key for storage-form values."""
    rank = type_rank(value)
    if rank == 0:
        return (0, 0)
    if rank == 1:
        return (1, int(value))
    if rank == 5:
        return (5, tuple(sort_key(v) for v in value))
    if rank == 6:
        return (6, tuple((k, sort_key(v)) for k, v in sorted(value.items())))
    return (rank, value)


def values_equal(a: Any, b: Any) -> bool:
    return sort_key(a) == sort_key(b)
