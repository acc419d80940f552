"""
In-memory persistence backend.

This module provides a simple in-memory backend for:
- Unit tests
- Integration tests
- Embedding without durability requirements

Invariants:
    - All data is lost on close()
    - Documents are deep-copied on the way in and out
    - commit() validates every write before applying any of them
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict

from ..errors import BackendClosedError, BackendError
from .base import DeleteWrite, PutWrite, StoredDocument, Write

logger = logging.getLogger(__name__)


class InMemoryBackend:
    """In-memory implementation of StorageBackend.

    Thread safety:
        Uses an asyncio lock; safe to use from multiple coroutines on
        one event loop.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.connect()
        >>> await backend.commit([PutWrite(doc)])
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, StoredDocument]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryBackend connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._collections.clear()
        logger.debug("InMemoryBackend closed")

    def _check_connected(self) -> None:
        if not self._connected:
            raise BackendClosedError("Not connected")

    async def get(self, collection_path: str, doc_id: str) -> StoredDocument | None:
        self._check_connected()
        collection = self._collections.get(collection_path)
        if not collection or doc_id not in collection:
            return None
        return copy.deepcopy(collection[doc_id])

    async def scan(self, collection_path: str) -> list[StoredDocument]:
        self._check_connected()
        collection = self._collections.get(collection_path, {})
        return [copy.deepcopy(collection[doc_id]) for doc_id in sorted(collection)]

    async def commit(self, writes: list[Write]) -> None:
        self._check_connected()

        for write in writes:
            if not isinstance(write, (PutWrite, DeleteWrite)):
                raise BackendError(f"Unknown write type: {type(write).__name__}")
        staged = [
            PutWrite(copy.deepcopy(w.document)) if isinstance(w, PutWrite) else w for w in writes
        ]

        async with self._lock:
            for write in staged:
                if isinstance(write, PutWrite):
                    doc = write.document
                    self._collections[doc.collection_path][doc.doc_id] = doc
                else:
                    collection = self._collections.get(write.collection_path)
                    if collection is not None:
                        collection.pop(write.doc_id, None)
                        if not collection:
                            del self._collections[write.collection_path]

        logger.debug("Committed writes to in-memory backend", extra={"writes": len(writes)})

    # Testing helpers

    def get_document_count(self, collection_path: str | None = None) -> int:
        """Count stored documents, optionally for one collection (testing helper)."""
        if collection_path is not None:
            return len(self._collections.get(collection_path, {}))
        return sum(len(c) for c in self._collections.values())

    def collection_paths(self) -> list[str]:
        """Collections currently holding at least one document."""
        return sorted(path for path, docs in self._collections.items() if docs)
