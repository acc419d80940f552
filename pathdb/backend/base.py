"""
Base protocol and types for persistence backends.

This module defines the StorageBackend protocol that all backends must
implement, along with the stored-document and write types passed across
it. Backends only ever see storage-form values (see pathdb.codec).

Invariants:
    - commit() is atomic: every write in the list applies, or none does
    - scan() returns the documents directly inside one collection,
      ordered by document ID
    - Values returned by a backend are never aliased with its own state

How to change safely:
    - Protocol changes require updating all implementations
    - Keep writes expressed as PutWrite / DeleteWrite so batches stay atomic
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Union, runtime_checkable

from ..timestamp import Timestamp

if TYPE_CHECKING:
    from ..config import StorageConfig


@dataclass
class StoredDocument:
    """A document as held by a backend.

    Attributes:
        collection_path: Path of the owning collection
        doc_id: Document ID, unique within the collection
        data: Storage-form fields
        create_time: When the document was first written
        update_time: When the document was last written
    """

    collection_path: str
    doc_id: str
    data: dict[str, Any]
    create_time: Timestamp
    update_time: Timestamp

    @property
    def path(self) -> str:
        return f"{self.collection_path}/{self.doc_id}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization (data stays storage-form)."""
        return {
            "collection_path": self.collection_path,
            "doc_id": self.doc_id,
            "data": self.data,
            "create_time": self.create_time,
            "update_time": self.update_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredDocument:
        """Create from dictionary."""
        return cls(
            collection_path=data["collection_path"],
            doc_id=data["doc_id"],
            data=data["data"],
            create_time=data["create_time"],
            update_time=data["update_time"],
        )


@dataclass(frozen=True)
class PutWrite:
    """Create or fully replace a document."""

    document: StoredDocument

    @property
    def path(self) -> str:
        return self.document.path


@dataclass(frozen=True)
class DeleteWrite:
    """Remove a document; absent documents are ignored."""

    collection_path: str
    doc_id: str

    @property
    def path(self) -> str:
        return f"{self.collection_path}/{self.doc_id}"


Write = Union[PutWrite, DeleteWrite]


@runtime_checkable
class StorageBackend(Protocol):
    """Protocol for persistence backends.

    Durability contract:
        - commit() returns only after the writes are visible to get()/scan()
        - File-backed backends persist the commit before returning

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.connect()
        >>> await backend.commit([PutWrite(doc)])
        >>> await backend.get("users", "u1")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def get(self, collection_path: str, doc_id: str) -> StoredDocument | None:
        """Fetch one document, or None if absent."""
        ...

    @abstractmethod
    async def scan(self, collection_path: str) -> list[StoredDocument]:
        """All documents directly inside a collection, ordered by ID."""
        ...

    @abstractmethod
    async def commit(self, writes: list[Write]) -> None:
        """Apply writes atomically.

        Raises:
            BackendClosedError: If the backend is not connected
            BackendError: For other failures (nothing applied)
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether connect() has been called and close() has not."""
        ...


def create_backend(config: StorageConfig) -> StorageBackend:
    """Factory function to create a backend from configuration.

    Args:
        config: Storage configuration

    Returns:
        Appropriate StorageBackend implementation

    Raises:
        ValueError: If backend is not supported or misconfigured
    """
    from ..config import BackendKind
    from .journal import JournalBackend
    from .memory import InMemoryBackend
    from .sqlite import SqliteBackend

    if config.backend == BackendKind.MEMORY:
        return InMemoryBackend()
    if not config.data_dir:
        raise ValueError(f"data_dir is required for the {config.backend.value} backend")
    if config.backend == BackendKind.SQLITE:
        return SqliteBackend(
            config.data_dir,
            database_name=config.database_name,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    elif config.backend == BackendKind.JOURNAL:
        return JournalBackend(
            config.data_dir,
            database_name=config.database_name,
            fsync=config.journal_fsync,
        )
    else:
        raise ValueError(f"Unsupported backend: {config.backend}")
