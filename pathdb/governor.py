"""
Sliding-window request accounting for PathDB.

The governor keeps a one-minute window of request times per operation
class and, for path-scoped classes, per path:

    general          one process-wide window (all writes, queries, batches)
    document-read    one window per document path
    collection-scan  one window per collection path
    subscription     one window per subscribed path

This is advisory local throttling, not a distributed quota: state lives
in-process and is never shared across processes.

Invariants:
    - A request is recorded before the ceiling is checked, so rejected
      requests still occupy the window
    - Entries older than the window length are pruned on every record
    - Windows left empty are dropped; a full sweep runs at most once per
      window length, so idle paths do not accumulate
    - All window mutations happen under a single lock
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from enum import Enum

from .config import GovernorConfig
from .errors import RateLimitError

logger = logging.getLogger(__name__)


class OperationClass(Enum):
    """Rate-limited operation classes."""

    GENERAL = "general"
    DOCUMENT_READ = "document-read"
    COLLECTION_SCAN = "collection-scan"
    SUBSCRIPTION = "subscription"


class RateGovernor:
    """Per-class sliding-window rate limiter.

    Thread safety:
        All state is guarded by a threading.Lock, so the governor can be
        shared between event loops and threads.

    Example:
        >>> governor = RateGovernor(GovernorConfig(general_per_minute=2))
        >>> governor.record(OperationClass.GENERAL)
        >>> governor.record(OperationClass.GENERAL)
        >>> governor.record(OperationClass.GENERAL)
        Traceback (most recent call last):
        ...
        pathdb.errors.RateLimitError: Rate limit exceeded. Please try again later.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the governor.

        Args:
            config: Ceilings and window length (defaults if omitted)
            clock: Monotonic time source in seconds
        """
        self.config = config or GovernorConfig()
        self._clock = clock
        self._windows: dict[tuple[OperationClass, str | None], deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def limit_for(self, operation: OperationClass) -> int:
        """Ceiling for an operation class."""
        return {
            OperationClass.GENERAL: self.config.general_per_minute,
            OperationClass.DOCUMENT_READ: self.config.document_reads_per_minute,
            OperationClass.COLLECTION_SCAN: self.config.collection_scans_per_minute,
            OperationClass.SUBSCRIPTION: self.config.subscriptions_per_minute,
        }[operation]

    def record(self, operation: OperationClass, key: str | None = None) -> None:
        """Record one request and enforce the ceiling.

        Args:
            operation: Operation class
            key: Path for path-scoped classes (ignored for GENERAL)

        Raises:
            RateLimitError: If the window now holds more requests than allowed
        """
        if not self.config.enabled:
            return

        if operation is OperationClass.GENERAL:
            key = None
        limit = self.limit_for(operation)
        window_seconds = self.config.window_seconds

        with self._lock:
            now = self._clock()
            window = self._windows.setdefault((operation, key), deque())
            window.append(now)
            while window and now - window[0] >= window_seconds:
                window.popleft()
            count = len(window)
            if now - self._last_sweep >= window_seconds:
                self._sweep(now)

        if count > limit:
            logger.warning(
                "Rate limit exceeded",
                extra={"operation": operation.value, "key": key, "count": count, "limit": limit},
            )
            if key is None:
                message = "Rate limit exceeded. Please try again later."
            else:
                message = f"Rate limit exceeded for path: {key}. Please try again later."
            raise RateLimitError(
                message,
                operation=operation.value,
                key=key,
                limit=limit,
                window_seconds=window_seconds,
            )

    def usage(self, operation: OperationClass, key: str | None = None) -> int:
        """Number of requests currently inside the window."""
        if operation is OperationClass.GENERAL:
            key = None
        with self._lock:
            window = self._windows.get((operation, key))
            if not window:
                return 0
            now = self._clock()
            while window and now - window[0] >= self.config.window_seconds:
                window.popleft()
            if not window:
                del self._windows[(operation, key)]
            return len(window)

    @property
    def tracked_windows(self) -> int:
        """Number of (class, path) windows currently held."""
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        # Caller holds self._lock.
        window_seconds = self.config.window_seconds
        for key in list(self._windows):
            window = self._windows[key]
            while window and now - window[0] >= window_seconds:
                window.popleft()
            if not window:
                del self._windows[key]
        self._last_sweep = now

    def reset(self) -> None:
        """Forget all recorded requests."""
        with self._lock:
            self._windows.clear()
