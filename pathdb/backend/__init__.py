"""
Persistence backends for PathDB.

This module provides a pluggable backend interface supporting:
- In-memory (tests and ephemeral embedding)
- SQLite (single file, transactional)
- Append-only journal (JSON lines, replayed on start)

Backends only ever see storage-form values; conversion to and from
native Python values happens in pathdb.codec.

Invariants:
    - commit() is atomic for the list of writes it receives
    - Failed commits must not result in partial writes
"""

from .base import (
    DeleteWrite,
    PutWrite,
    StorageBackend,
    StoredDocument,
    Write,
    create_backend,
)
from .journal import JournalBackend
from .memory import InMemoryBackend
from .sqlite import SqliteBackend

__all__ = [
    # Protocol and types
    "StorageBackend",
    "StoredDocument",
    "PutWrite",
    "DeleteWrite",
    "Write",
    # Factory
    "create_backend",
    # Implementations
    "InMemoryBackend",
    "SqliteBackend",
    "JournalBackend",
]
