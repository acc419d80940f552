"""
Fixed-point timestamp type for PathDB.

Timestamps are stored as whole seconds since the Unix epoch plus a
nanosecond fraction, distinct from plain numbers so the codec can map
them back to native datetimes.

Invariants:
    - 0 <= nanoseconds < 1_000_000_000
    - datetime -> Timestamp -> datetime is lossless (microsecond precision)
    - Naive datetimes are interpreted as UTC
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_NANOS_PER_SECOND = 1_000_000_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True, order=True)
class Timestamp:
    """A point in time with nanosecond resolution.

    Attributes:
        seconds: Seconds since the Unix epoch (may be negative)
        nanoseconds: Fractional part, 0 <= n < 1e9

    Example:
        >>> ts = Timestamp.from_datetime(datetime(2024, 1, 1, tzinfo=timezone.utc))
        >>> ts.to_datetime()
        datetime.datetime(2024, 1, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """

    seconds: int
    nanoseconds: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.nanoseconds < _NANOS_PER_SECOND:
            raise ValueError(f"nanoseconds out of range: {self.nanoseconds}")

    @classmethod
    def now(cls) -> Timestamp:
        return cls.from_nanos(time.time_ns())

    @classmethod
    def from_nanos(cls, nanos: int) -> Timestamp:
        seconds, nanoseconds = divmod(nanos, _NANOS_PER_SECOND)
        return cls(seconds=seconds, nanoseconds=nanoseconds)

    @classmethod
    def from_millis(cls, millis: int) -> Timestamp:
        return cls.from_nanos(millis * 1_000_000)

    @classmethod
    def from_datetime(cls, value: datetime) -> Timestamp:
        """Convert a datetime, treating naive values as UTC."""
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        delta = value - _EPOCH
        micros = (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
        return cls.from_nanos(micros * 1_000)

    def to_nanos(self) -> int:
        return self.seconds * _NANOS_PER_SECOND + self.nanoseconds

    def to_millis(self) -> int:
        return self.to_nanos() // 1_000_000

    def to_datetime(self) -> datetime:
        """Convert to an aware UTC datetime (truncated to microseconds)."""
        return _EPOCH + timedelta(microseconds=self.to_nanos() // 1_000)

    def __str__(self) -> str:
        return f"Timestamp(seconds={self.seconds}, nanoseconds={self.nanoseconds})"
