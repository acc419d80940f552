"""
Change feed: subscription registry and per-subscriber delivery.

Subscriptions bind a consumer to a document path or a collection path.
The store publishes a snapshot after every committed mutation:

    document subscription   -> Document | None (None once deleted)
    collection subscription -> list[Document] (full member list, not a diff)

Each subscription owns an asyncio.Queue. Publishing only enqueues, so a
slow consumer never blocks the writer. A subscription created with a
callback drains its queue from its own delivery task; one created without
a callback is consumed with ``async for``.

Invariants:
    - Per subscriber, snapshots arrive in commit order
    - A failing callback is logged and never affects other subscribers
    - cancel() is idempotent; nothing enqueued after cancel() is observed
    - The registry is guarded by a mutex

How to change safely:
    - Keep publish() non-blocking (put_nowait only)
    - Do not await between registry lookup and enqueue in publish paths
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import itertools
import logging
import threading
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Union

from .document import Document

logger = logging.getLogger(__name__)

Snapshot = Union[Document, None, list[Document]]
Callback = Callable[[Any], Union[Awaitable[None], None]]

_STOP = object()


class SubscriptionKind(Enum):
    """What a subscription watches."""

    DOCUMENT = "document"
    COLLECTION = "collection"


class Subscription:
    """Handle for one subscriber.

    Use as an unsubscribe handle (``cancel()``), or, when created without a
    callback, as an async iterator of snapshots:

        >>> sub = await store.subscribe_collection("users")
        >>> async for users in sub:
        ...     print(len(users))
    """

    def __init__(
        self,
        feed: ChangeFeed,
        sub_id: int,
        kind: SubscriptionKind,
        path: str,
        callback: Callback | None = None,
    ) -> None:
        self._feed = feed
        self.id = sub_id
        self.kind = kind
        self.path = path
        self._callback = callback
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._cancelled = False
        self._task: asyncio.Task[None] | None = None
        self.delivered = 0
        self.failures = 0

        if callback is not None:
            self._task = asyncio.get_running_loop().create_task(self._deliver_loop())

    @property
    def active(self) -> bool:
        return not self._cancelled

    @property
    def pending(self) -> int:
        """Snapshots enqueued but not yet delivered."""
        return self._queue.qsize()

    def deliver(self, snapshot: Snapshot) -> None:
        """Enqueue a snapshot; a no-op once cancelled."""
        if self._cancelled:
            return
        self._queue.put_nowait(snapshot)

    def cancel(self) -> None:
        """Stop receiving snapshots. Safe to call any number of times."""
        if self._cancelled:
            return
        self._cancelled = True
        self._feed._remove(self)

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        # Wakes the consumer; not counted as an unfinished item
        self._queue.put_nowait(_STOP)
        self._queue.task_done()

        logger.debug(
            "Subscription cancelled",
            extra={"subscription_id": self.id, "path": self.path, "kind": self.kind.value},
        )

    unsubscribe = cancel

    def __call__(self) -> None:
        self.cancel()

    async def join(self) -> None:
        """Wait until every snapshot enqueued so far has been handled."""
        await self._queue.join()

    async def wait_closed(self) -> None:
        """Wait for the delivery task to finish after cancel()."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _deliver_loop(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            try:
                if self._cancelled:
                    continue
                result = self._callback(item)  # type: ignore[misc]
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception(
                    "Subscriber callback failed",
                    extra={"subscription_id": self.id, "path": self.path},
                )
            finally:
                self._queue.task_done()

    def __aiter__(self) -> Subscription:
        if self._callback is not None:
            raise TypeError("Subscription with a callback cannot be iterated")
        return self

    async def __anext__(self) -> Snapshot:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _STOP or self._cancelled:
            raise StopAsyncIteration
        self._queue.task_done()
        self.delivered += 1
        return item

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"Subscription(id={self.id}, {self.kind.value}={self.path!r}, {state})"


class ChangeFeed:
    """Registry of live subscriptions keyed by watched path.

    Example:
        A callback subscription starts its delivery task on the running
        event loop, so create it from inside a coroutine:

        >>> async def watch():
        ...     feed = ChangeFeed()
        ...     sub = feed.subscribe_document("users/u1", print)
        ...     feed.publish_document("users/u1", doc)
        ...     await sub.join()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._documents: dict[str, dict[int, Subscription]] = {}
        self._collections: dict[str, dict[int, Subscription]] = {}

    def _registry(self, kind: SubscriptionKind) -> dict[str, dict[int, Subscription]]:
        return self._documents if kind is SubscriptionKind.DOCUMENT else self._collections

    def _add(self, kind: SubscriptionKind, path: str, callback: Callback | None) -> Subscription:
        with self._lock:
            sub = Subscription(self, next(self._ids), kind, path, callback)
            self._registry(kind).setdefault(path, {})[sub.id] = sub
        logger.debug(
            "Subscription created",
            extra={"subscription_id": sub.id, "path": path, "kind": kind.value},
        )
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            registry = self._registry(sub.kind)
            subs = registry.get(sub.path)
            if subs is None:
                return
            subs.pop(sub.id, None)
            if not subs:
                del registry[sub.path]

    def subscribe_document(self, path: str, callback: Callback | None = None) -> Subscription:
        """Register a subscriber for one document path."""
        return self._add(SubscriptionKind.DOCUMENT, path, callback)

    def subscribe_collection(self, path: str, callback: Callback | None = None) -> Subscription:
        """Register a subscriber for the direct members of a collection."""
        return self._add(SubscriptionKind.COLLECTION, path, callback)

    def has_document_subscribers(self, path: str) -> bool:
        with self._lock:
            return path in self._documents

    def has_collection_subscribers(self, path: str) -> bool:
        with self._lock:
            return path in self._collections

    def publish_document(self, path: str, document: Document | None) -> int:
        """Enqueue a document snapshot for every subscriber of ``path``.

        Each subscriber gets its own copy, so mutating a snapshot in one
        callback is never visible to another.

        Returns:
            Number of subscribers notified
        """
        with self._lock:
            subs = list(self._documents.get(path, {}).values())
        for sub in subs:
            sub.deliver(copy.deepcopy(document))
        return len(subs)

    def publish_collection(self, path: str, documents: list[Document]) -> int:
        """Enqueue a member-list snapshot for every subscriber of ``path``.

        Each subscriber gets its own copy of the list and its documents.
        """
        with self._lock:
            subs = list(self._collections.get(path, {}).values())
        for sub in subs:
            sub.deliver(copy.deepcopy(documents))
        return len(subs)

    def subscription_count(self) -> int:
        with self._lock:
            return sum(len(s) for s in self._documents.values()) + sum(
                len(s) for s in self._collections.values()
            )

    def close(self) -> None:
        """Cancel every subscription."""
        with self._lock:
            subs = [
                sub
                for registry in (self._documents, self._collections)
                for by_id in registry.values()
                for sub in by_id.values()
            ]
        for sub in subs:
            sub.cancel()
        logger.info("Change feed closed", extra={"cancelled": len(subs)})
