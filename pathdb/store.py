"""
DocumentStore: the persistence core of PathDB.

The store ties the other components together. For every call:

    1. PathCodec validates the path (and DataCodec converts the payload)
    2. RateGovernor records the request and may reject it
    3. The backend is read and, for mutations, written
    4. The ChangeFeed is handed the new state of every affected path

Validation happens before rate accounting, so a malformed request never
consumes quota.

Concurrency:
    - Mutations hold an asyncio.Lock per document path for the whole
      read-modify-write, so concurrent updates of one document apply one
      at a time and each sees the previous result
    - Backend commit and feed publication happen together under one
      commit lock, so every subscriber sees mutations in commit order
    - Reads take no locks

Invariants:
    - get()/list_collection() of an absent target return None / []
    - update() of an absent document raises NotFoundError
    - delete() is idempotent
    - update() and set(merge=True) merge top-level fields only
    - Commit timestamps are strictly increasing per store

How to change safely:
    - Express new mutations as PreparedOperation lists so they stay atomic
    - Always acquire path locks before the commit lock
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
import weakref
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from .backend.base import DeleteWrite, PutWrite, StorageBackend, StoredDocument, Write, create_backend
from .batch import BatchOperation, OperationKind, PreparedOperation, WriteBatch
from .config import StoreConfig
from .document import Document
from .errors import BatchError, PathDbError
from .feed import Callback, ChangeFeed, Subscription
from .governor import OperationClass, RateGovernor
from .paths import (
    ParsedPath,
    PathKind,
    document_path,
    validate_collection_path,
    validate_document_path,
    validate_path,
)
from .query import QueryEngine, QueryOptions
from .timestamp import Timestamp

logger = logging.getLogger(__name__)

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits
_AUTO_ID_LENGTH = 20


def generate_id() -> str:
    """Random 20-character alphanumeric document ID."""
    return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(_AUTO_ID_LENGTH))


class DocumentStore:
    """Path-addressed document store.

    Construct with an explicit backend (and optionally a governor and a
    feed), or use open_store() to build one from configuration.

    Example:
        >>> store = await open_store()
        >>> user_id = await store.add("users", {"name": "Alice"})
        >>> await store.update(f"users/{user_id}", {"age": 30})
        >>> doc = await store.get(f"users/{user_id}")
        >>> doc.data
        {'name': 'Alice', 'age': 30}
    """

    def __init__(
        self,
        backend: StorageBackend,
        governor: RateGovernor | None = None,
        feed: ChangeFeed | None = None,
        config: StoreConfig | None = None,
    ) -> None:
        self.config = config or StoreConfig()
        self.backend = backend
        self.governor = governor or RateGovernor(self.config.governor)
        self.feed = feed or ChangeFeed()
        self.query_engine = QueryEngine(self.config.limits.max_query_limit)

        self._path_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._commit_lock = asyncio.Lock()
        self._last_commit_time = Timestamp(0)
        self._closed = False

    # ------------------------------------------------------------------
    # Paths and time
    # ------------------------------------------------------------------

    def validate_path(self, path: str, kind: PathKind) -> ParsedPath:
        """Validate a path for the given resource kind.

        Raises:
            PathError: If the path is malformed
        """
        return validate_path(path, kind)

    def server_time(self) -> Timestamp:
        """Current store time; never earlier than the last commit."""
        return max(Timestamp.now(), self._last_commit_time)

    def _next_commit_time(self) -> Timestamp:
        now = Timestamp.now()
        if now <= self._last_commit_time:
            now = Timestamp.from_nanos(self._last_commit_time.to_nanos() + 1)
        self._last_commit_time = now
        return now

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, path: str) -> Document | None:
        """Read one document.

        Returns:
            The document, or None if nothing is stored at ``path``

        Raises:
            PathError: If ``path`` is not a document path
            RateLimitError: If the per-document read ceiling is exceeded
        """
        parsed = validate_document_path(path)
        self.governor.record(OperationClass.DOCUMENT_READ, parsed.path)
        stored = await self.backend.get(parsed.collection_path, parsed.id)
        return Document.from_stored(stored) if stored is not None else None

    async def exists(self, path: str) -> bool:
        parsed = validate_document_path(path)
        self.governor.record(OperationClass.DOCUMENT_READ, parsed.path)
        return await self.backend.get(parsed.collection_path, parsed.id) is not None

    async def list_collection(self, path: str) -> list[Document]:
        """All documents directly inside a collection, ordered by ID.

        A collection that was never written to is empty, not an error.

        Raises:
            PathError: If ``path`` is not a collection path
            RateLimitError: If the per-collection scan ceiling is exceeded
        """
        parsed = validate_collection_path(path)
        self.governor.record(OperationClass.COLLECTION_SCAN, parsed.path)
        return [Document.from_stored(s) for s in await self.backend.scan(parsed.path)]

    async def query(
        self,
        path: str,
        options: QueryOptions | None = None,
        **kwargs: Any,
    ) -> list[Document]:
        """Run a structured query over one collection.

        Options may be given as a QueryOptions or as keyword arguments
        (``where``, ``order_by``, ``limit``, ``start_after``, ...).

        Raises:
            PathError: If ``path`` is not a collection path
            InvalidQueryError: If the query is malformed
            RateLimitError: If the general ceiling is exceeded
        """
        parsed = validate_collection_path(path)
        if options is None:
            options = QueryOptions(**kwargs)
        elif kwargs:
            raise TypeError("Pass either a QueryOptions or keyword arguments, not both")

        self.governor.record(OperationClass.GENERAL)
        stored = await self.backend.scan(parsed.path)
        return [Document.from_stored(s) for s in self.query_engine.execute(stored, options)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def add(
        self,
        collection_path: str,
        data: dict[str, Any],
        doc_id: str | None = None,
    ) -> str:
        """Create a document and return its ID.

        Args:
            collection_path: Collection to add to
            data: Document fields
            doc_id: Use this ID instead of a generated one

        Raises:
            PathError: If the collection path (or doc_id) is invalid
            CodecError: If ``data`` cannot be stored
            AlreadyExistsError: If ``doc_id`` is already taken
            RateLimitError: If the general ceiling is exceeded
        """
        path = document_path(collection_path, doc_id if doc_id is not None else generate_id())
        operation = BatchOperation(OperationKind.CREATE, path, data).prepare()
        self.governor.record(OperationClass.GENERAL)
        await self._write([operation])
        return operation.target.id

    async def update(self, path: str, data: dict[str, Any]) -> None:
        """Shallow-merge ``data`` into an existing document.

        Nested mappings in ``data`` replace the stored value wholesale.

        Raises:
            PathError: If ``path`` is not a document path
            CodecError: If ``data`` cannot be stored
            NotFoundError: If the document does not exist
            RateLimitError: If the general ceiling is exceeded
        """
        operation = BatchOperation(OperationKind.UPDATE, path, data).prepare()
        self.governor.record(OperationClass.GENERAL)
        await self._write([operation])

    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        """Write a document.

        With ``merge=False`` the stored fields are replaced; with
        ``merge=True`` they are shallow-merged and the document is created
        if absent.
        """
        operation = BatchOperation(OperationKind.SET, path, data, merge=merge).prepare()
        self.governor.record(OperationClass.GENERAL)
        await self._write([operation])

    async def delete(self, path: str) -> None:
        """Delete a document; deleting an absent document is a no-op."""
        operation = BatchOperation(OperationKind.DELETE, path).prepare()
        self.governor.record(OperationClass.GENERAL)
        await self._write([operation])

    async def delete_collection(self, path: str) -> int:
        """Delete every document directly inside a collection in one commit.

        Subcollections of those documents are left in place.

        Returns:
            Number of documents deleted
        """
        parsed = validate_collection_path(path)
        self.governor.record(OperationClass.GENERAL)
        stored = await self.backend.scan(parsed.path)
        operations = [
            BatchOperation(OperationKind.DELETE, s.path).prepare() for s in stored
        ]
        if operations:
            await self._write(operations)
        logger.info("Deleted collection", extra={"path": parsed.path, "deleted": len(operations)})
        return len(operations)

    def batch(self) -> WriteBatch:
        """Start a new write batch."""
        return WriteBatch(self, max_size=self.config.limits.max_batch_size)

    async def _commit_batch(self, operations: list[PreparedOperation]) -> None:
        self.governor.record(OperationClass.GENERAL)
        if not operations:
            return
        try:
            await self._write(operations, batch=True)
        except BatchError:
            raise
        except PathDbError as e:
            raise BatchError(f"Batch commit failed: {e.message}") from e

    @asynccontextmanager
    async def _locked(self, paths: Iterable[str]) -> AsyncIterator[None]:
        # Sorted acquisition keeps multi-path batches deadlock free
        locks = []
        for path in sorted(set(paths)):
            lock = self._path_locks.get(path)
            if lock is None:
                lock = asyncio.Lock()
                self._path_locks[path] = lock
            locks.append(lock)

        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    async def _write(self, operations: list[PreparedOperation], batch: bool = False) -> None:
        """Apply operations atomically under their path locks."""
        async with self._locked(op.path for op in operations):
            now = self._next_commit_time()
            original: dict[str, StoredDocument | None] = {}
            staged: dict[str, StoredDocument | None] = {}

            for index, op in enumerate(operations):
                if op.path not in staged:
                    current = await self.backend.get(op.target.collection_path, op.target.id)
                    original[op.path] = current
                    staged[op.path] = current
                try:
                    staged[op.path] = op.apply(staged[op.path], now)
                except PathDbError as e:
                    if not batch:
                        raise
                    raise BatchError(
                        f"Batch operation {index} ({op.kind.value} {op.path}) failed: {e.message}",
                        index=index,
                        path=op.path,
                    ) from e

            writes: list[Write] = []
            for path, state in staged.items():
                if state is not None:
                    writes.append(PutWrite(state))
                elif original[path] is not None:
                    target = validate_document_path(path)
                    writes.append(DeleteWrite(target.collection_path, target.id))

            if not writes:
                return
            await self._commit(writes)

        logger.debug(
            "Committed writes",
            extra={
                "writes": len(writes),
                "paths": [w.path for w in writes][:10],
                "commit_time": now.to_nanos(),
            },
        )

    async def _commit(self, writes: list[Write]) -> None:
        async with self._commit_lock:
            await self.backend.commit(writes)
            await self._notify(writes)

    async def _notify(self, writes: list[Write]) -> None:
        """Publish the post-commit state of every affected path."""
        collections: dict[str, None] = {}
        for write in writes:
            if isinstance(write, PutWrite):
                collection = write.document.collection_path
                if self.feed.has_document_subscribers(write.path):
                    self.feed.publish_document(write.path, Document.from_stored(write.document))
            else:
                collection = write.collection_path
                if self.feed.has_document_subscribers(write.path):
                    self.feed.publish_document(write.path, None)
            collections.setdefault(collection, None)

        for collection in collections:
            if self.feed.has_collection_subscribers(collection):
                members = await self.backend.scan(collection)
                self.feed.publish_collection(collection, [Document.from_stored(s) for s in members])

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe_document(
        self,
        path: str,
        callback: Callback | None = None,
        initial_snapshot: bool | None = None,
    ) -> Subscription:
        """Watch one document.

        The subscriber receives the Document after every committed change
        (None once deleted). Without a callback, iterate the returned
        Subscription with ``async for``.

        Args:
            path: Document path
            callback: Sync or async callable taking the snapshot
            initial_snapshot: Deliver the current state first (default
                from FeedConfig)

        Returns:
            Subscription; call ``cancel()`` to unsubscribe

        Raises:
            PathError: If ``path`` is not a document path
            RateLimitError: If the per-path subscription ceiling is exceeded
        """
        parsed = validate_document_path(path)
        self.governor.record(OperationClass.SUBSCRIPTION, parsed.path)
        if initial_snapshot is None:
            initial_snapshot = self.config.feed.deliver_initial_snapshot

        # Read before registering: a failed read must leave no subscription.
        async with self._commit_lock:
            if initial_snapshot:
                stored = await self.backend.get(parsed.collection_path, parsed.id)
            subscription = self.feed.subscribe_document(parsed.path, callback)
            if initial_snapshot:
                subscription.deliver(Document.from_stored(stored) if stored is not None else None)
        return subscription

    async def subscribe_collection(
        self,
        path: str,
        callback: Callback | None = None,
        initial_snapshot: bool | None = None,
    ) -> Subscription:
        """Watch the direct members of a collection.

        The subscriber receives the full member list, ordered by ID, after
        every committed change to a document directly inside the collection.
        """
        parsed = validate_collection_path(path)
        self.governor.record(OperationClass.SUBSCRIPTION, parsed.path)
        if initial_snapshot is None:
            initial_snapshot = self.config.feed.deliver_initial_snapshot

        async with self._commit_lock:
            if initial_snapshot:
                members = await self.backend.scan(parsed.path)
            subscription = self.feed.subscribe_collection(parsed.path, callback)
            if initial_snapshot:
                subscription.deliver([Document.from_stored(s) for s in members])
        return subscription

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Cancel every subscription and close the backend."""
        if self._closed:
            return
        self._closed = True
        self.feed.close()
        await self.backend.close()
        logger.info("Store closed")

    async def __aenter__(self) -> DocumentStore:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # Short alias matching the other verbs
    list = list_collection


async def open_store(config: StoreConfig | None = None) -> DocumentStore:
    """Create, connect and return a store built from configuration.

    Args:
        config: Store configuration (defaults: in-memory backend)

    Raises:
        ValueError: If configuration is invalid
        BackendError: If the backend cannot be opened
    """
    config = config or StoreConfig()
    config.validate()
    config.log_config()

    backend = create_backend(config.storage)
    await backend.connect()

    store = DocumentStore(backend, config=config)
    logger.info(
        "Store opened",
        extra={"backend": config.storage.backend.value, "data_dir": config.storage.data_dir},
    )
    return store
