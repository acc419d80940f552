"""
PathDB - Embeddable document store with path-addressed collections.

This package implements a single-node document store built on:
- Slash-separated paths: collections at odd depth, documents at even depth
- Shallow-merge updates, field transforms and atomic write batches
- Structured queries with ordering and cursor pagination
- Change feeds delivering snapshots to per-subscriber queues
- Pluggable persistence (in-memory, SQLite, append-only journal)

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────┐
    │   Caller    │────▶│  PathCodec  │────▶│RateGovernor │
    │ (Repository)│     │ + DataCodec │     │             │
    └─────────────┘     └─────────────┘     └──────┬──────┘
                                                   │
                                                   ▼
                        ┌─────────────────────────────────────────┐
                        │              DocumentStore              │
                        │   per-path locks, commit lock, batches  │
                        └─────────────────────────────────────────┘
                             │               │               │
                             ▼               ▼               ▼
                        ┌─────────┐     ┌─────────┐     ┌──────────┐
                        │ Backend │     │  Query  │     │  Change  │
                        │(storage)│     │ Engine  │     │   Feed   │
                        └─────────┘     └─────────┘     └──────────┘

Example:
    >>> from pathdb import open_store, increment
    >>>
    >>> store = await open_store()
    >>> user_id = await store.add("users", {"name": "Alice", "visits": 0})
    >>> await store.update(f"users/{user_id}", {"visits": increment(1)})
    >>> docs = await store.query("users", where=[("visits", ">", 0)], order_by=["name"])

Invariants:
    - Path validation runs before rate accounting, which runs before I/O
    - Mutations of one document path are serialized
    - Each subscriber sees snapshots in commit order
    - Batches apply all-or-nothing

How to change safely:
    - Backends only see storage-form values; keep conversion in pathdb.codec
    - New mutation kinds go through pathdb.batch.PreparedOperation
"""

from ._version import __version__
from .batch import BatchOperation, OperationKind, WriteBatch
from .codec import UNSET, from_storage, to_storage
from .config import (
    BackendKind,
    FeedConfig,
    GovernorConfig,
    LimitsConfig,
    ObservabilityConfig,
    StorageConfig,
    StoreConfig,
)
from .document import Document
from .errors import (
    AlreadyExistsError,
    BackendClosedError,
    BackendError,
    BatchError,
    BatchSpentError,
    CodecError,
    DuplicateRegistrationError,
    InvalidQueryError,
    NotFoundError,
    PathDbError,
    PathError,
    RateLimitError,
    RegistryError,
    RegistryFrozenError,
    UnknownEntityError,
)
from .feed import ChangeFeed, Subscription, SubscriptionKind
from .governor import OperationClass, RateGovernor
from .logging_setup import setup_logging
from .models import EntityRegistry, EntityType, Repository, get_registry, register_entity
from .paths import (
    ParsedPath,
    PathKind,
    parse_path,
    validate_collection_path,
    validate_document_path,
    validate_path,
)
from .query import DOCUMENT_ID, Direction, FieldFilter, FilterOperator, Order, QueryEngine, QueryOptions
from .store import DocumentStore, open_store
from .timestamp import Timestamp
from .transforms import array_remove, array_union, delete_field, increment, server_timestamp

__all__ = [
    # Version
    "__version__",
    # Store
    "DocumentStore",
    "open_store",
    "Document",
    # Paths
    "ParsedPath",
    "PathKind",
    "parse_path",
    "validate_path",
    "validate_collection_path",
    "validate_document_path",
    # Values
    "Timestamp",
    "UNSET",
    "to_storage",
    "from_storage",
    "increment",
    "array_union",
    "array_remove",
    "delete_field",
    "server_timestamp",
    # Queries
    "QueryEngine",
    "QueryOptions",
    "FieldFilter",
    "FilterOperator",
    "Order",
    "Direction",
    "DOCUMENT_ID",
    # Batches
    "WriteBatch",
    "BatchOperation",
    "OperationKind",
    # Change feed
    "ChangeFeed",
    "Subscription",
    "SubscriptionKind",
    # Rate governor
    "RateGovernor",
    "OperationClass",
    # Entities
    "EntityType",
    "EntityRegistry",
    "Repository",
    "get_registry",
    "register_entity",
    # Configuration
    "StoreConfig",
    "GovernorConfig",
    "StorageConfig",
    "LimitsConfig",
    "FeedConfig",
    "ObservabilityConfig",
    "BackendKind",
    "setup_logging",
    # Errors
    "PathDbError",
    "PathError",
    "NotFoundError",
    "AlreadyExistsError",
    "RateLimitError",
    "InvalidQueryError",
    "BatchSpentError",
    "BatchError",
    "CodecError",
    "BackendError",
    "BackendClosedError",
    "RegistryError",
    "RegistryFrozenError",
    "DuplicateRegistrationError",
    "UnknownEntityError",
]
