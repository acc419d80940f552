"""
Configuration management for PathDB.

Configuration is passed explicitly to each store handle; there is no
process-wide store singleton. ``StoreConfig.from_env()`` builds a
configuration from ``PATHDB_*`` environment variables for deployments
that prefer that.

Invariants:
    - All settings have sensible defaults for local development
    - File-backed storage requires a data directory
    - Limits are strictly positive

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names prefixed with PATHDB_
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class BackendKind(Enum):
    """Supported persistence backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"
    JOURNAL = "journal"


@dataclass(frozen=True)
class GovernorConfig:
    """Rate governor configuration.

    Attributes:
        enabled: Whether requests are counted and limited at all
        window_seconds: Sliding window length
        general_per_minute: Ceiling for the process-wide general window
        document_reads_per_minute: Ceiling per document path for reads
        collection_scans_per_minute: Ceiling per collection path for listings
        subscriptions_per_minute: Ceiling per path for new subscriptions
    """

    enabled: bool = True
    window_seconds: float = 60.0
    general_per_minute: int = 500
    document_reads_per_minute: int = 30
    collection_scans_per_minute: int = 20
    subscriptions_per_minute: int = 30

    @classmethod
    def from_env(cls) -> GovernorConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("PATHDB_RATE_LIMIT_ENABLED", "true"),
            window_seconds=float(os.getenv("PATHDB_RATE_WINDOW_SECONDS", "60")),
            general_per_minute=int(os.getenv("PATHDB_RATE_GENERAL", "500")),
            document_reads_per_minute=int(os.getenv("PATHDB_RATE_DOCUMENT_READS", "30")),
            collection_scans_per_minute=int(os.getenv("PATHDB_RATE_COLLECTION_SCANS", "20")),
            subscriptions_per_minute=int(os.getenv("PATHDB_RATE_SUBSCRIPTIONS", "30")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Persistence backend configuration.

    Attributes:
        backend: Which backend to use
        data_dir: Directory for SQLite database / journal files
        database_name: File stem for the database or journal
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        journal_fsync: fsync the journal after every commit
    """

    backend: BackendKind = BackendKind.MEMORY
    data_dir: str | None = None
    database_name: str = "pathdb"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    journal_fsync: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        backend_str = os.getenv("PATHDB_BACKEND", "memory").lower()
        try:
            backend = BackendKind(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid PATHDB_BACKEND '{backend_str}'. Must be one of: memory, sqlite, journal"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("PATHDB_DATA_DIR"),
            database_name=os.getenv("PATHDB_DATABASE_NAME", "pathdb"),
            wal_mode=_env_bool("PATHDB_SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("PATHDB_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            journal_fsync=_env_bool("PATHDB_JOURNAL_FSYNC", "true"),
        )


@dataclass(frozen=True)
class LimitsConfig:
    """Request size limits.

    Attributes:
        max_batch_size: Maximum operations per write batch
        max_query_limit: Largest accepted query limit
    """

    max_batch_size: int = 500
    max_query_limit: int = 10000

    @classmethod
    def from_env(cls) -> LimitsConfig:
        """Load configuration from environment variables."""
        return cls(
            max_batch_size=int(os.getenv("PATHDB_MAX_BATCH_SIZE", "500")),
            max_query_limit=int(os.getenv("PATHDB_MAX_QUERY_LIMIT", "10000")),
        )


@dataclass(frozen=True)
class FeedConfig:
    """Change feed configuration.

    Attributes:
        deliver_initial_snapshot: Send the current state right after subscribing
    """

    deliver_initial_snapshot: bool = True

    @classmethod
    def from_env(cls) -> FeedConfig:
        """Load configuration from environment variables."""
        return cls(
            deliver_initial_snapshot=_env_bool("PATHDB_FEED_INITIAL_SNAPSHOT", "true"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("PATHDB_LOG_LEVEL", "INFO"),
            log_format=os.getenv("PATHDB_LOG_FORMAT", "text"),
        )


@dataclass
class StoreConfig:
    """Complete store configuration.

    Attributes:
        governor: Rate governor configuration
        storage: Persistence backend configuration
        limits: Batch and query limits
        feed: Change feed configuration
        observability: Logging configuration
    """

    governor: GovernorConfig = field(default_factory=GovernorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is invalid.
        """
        config = cls(
            governor=GovernorConfig.from_env(),
            storage=StorageConfig.from_env(),
            limits=LimitsConfig.from_env(),
            feed=FeedConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.storage.backend != BackendKind.MEMORY and not self.storage.data_dir:
            raise ValueError(
                f"PATHDB_DATA_DIR is required when PATHDB_BACKEND={self.storage.backend.value}"
            )

        for name in (
            "general_per_minute",
            "document_reads_per_minute",
            "collection_scans_per_minute",
            "subscriptions_per_minute",
        ):
            if getattr(self.governor, name) <= 0:
                raise ValueError(f"Rate limit '{name}' must be positive")
        if self.governor.window_seconds <= 0:
            raise ValueError("Rate window must be positive")

        if self.limits.max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive")
        if self.limits.max_query_limit <= 0:
            raise ValueError("max_query_limit must be positive")

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid log format '{self.observability.log_format}'. Must be one of: json, text"
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Store configuration loaded",
            extra={
                "backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir,
                "rate_limit_enabled": self.governor.enabled,
                "max_batch_size": self.limits.max_batch_size,
                "max_query_limit": self.limits.max_query_limit,
                "log_level": self.observability.log_level,
            },
        )
