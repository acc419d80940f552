"""
Error types for PathDB.

This module defines all exception types raised by the store:
- PathDbError: Base exception
- PathError: Malformed collection/document path
- NotFoundError: Operation required an existing document
- RateLimitError: Rate governor ceiling exceeded
- InvalidQueryError: Unsupported query shape
- BatchSpentError / BatchError: Write batch misuse or failed commit
- CodecError: Value cannot be represented in storage
- BackendError: Persistence backend failures
- AlreadyExistsError: add() with a caller-supplied ID that is taken
- RegistryError: Entity registry misuse

Invariants:
    - All errors inherit from PathDbError
    - Errors include context for debugging
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any


class PathDbError(Exception):
    """Base exception for all PathDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "PATHDB_ERROR"
        self.details = details or {}


class PathError(PathDbError):
    """Path is malformed.

    Raised when:
    - Path is empty
    - Path starts or ends with '/'
    - Path has an empty segment
    - Segment count has the wrong parity for the addressed resource
    """

    def __init__(self, message: str, path: str, kind: str | None = None) -> None:
        super().__init__(
            message,
            code="INVALID_PATH",
            details={"path": path, "kind": kind},
        )
        self.path = path
        self.kind = kind


class NotFoundError(PathDbError):
    """Document not found where one was required."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message, code="NOT_FOUND", details={"path": path})
        self.path = path


class RateLimitError(PathDbError):
    """Rate limit exceeded.

    The caller may retry after backing off; the store never retries on its own.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        key: str | None = None,
        limit: int | None = None,
        window_seconds: float | None = None,
    ) -> None:
        super().__init__(
            message,
            code="RATE_LIMITED",
            details={
                "operation": operation,
                "key": key,
                "limit": limit,
                "window_seconds": window_seconds,
            },
        )
        self.operation = operation
        self.key = key
        self.limit = limit
        self.window_seconds = window_seconds


class InvalidQueryError(PathDbError):
    """Query cannot be evaluated.

    Raised when:
    - Filter operator is unknown
    - Cursor is used without an ordering
    - Limit is out of range
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="INVALID_QUERY", details=details)


class BatchSpentError(PathDbError):
    """Write batch was already committed."""

    def __init__(self, message: str = "Batch has already been committed") -> None:
        super().__init__(message, code="BATCH_SPENT")


class BatchError(PathDbError):
    """Write batch failed to commit; none of its operations were applied.

    Attributes:
        index: Position of the failing operation in the batch
        path: Document path of the failing operation
    """

    def __init__(
        self,
        message: str,
        index: int | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="BATCH_ERROR",
            details={"index": index, "path": path},
        )
        self.index = index
        self.path = path


class CodecError(PathDbError):
    """Value cannot be converted to its storage representation."""

    def __init__(
        self,
        message: str,
        field_path: str | None = None,
        value_type: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="CODEC_ERROR",
            details={"field_path": field_path, "value_type": value_type},
        )
        self.field_path = field_path
        self.value_type = value_type


class BackendError(PathDbError):
    """Persistence backend failure."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="BACKEND_ERROR", details=details)


class BackendClosedError(BackendError):
    """Backend used before connect() or after close()."""

    pass


class AlreadyExistsError(PathDbError):
    """Document already exists where a new one was required."""

    def __init__(self, message: str, path: str) -> None:
        super().__init__(message, code="ALREADY_EXISTS", details={"path": path})
        self.path = path


class RegistryError(PathDbError):
    """Entity registry misuse."""

    def __init__(self, message: str, name: str | None = None) -> None:
        super().__init__(message, code="REGISTRY_ERROR", details={"name": name})
        self.name = name


class RegistryFrozenError(RegistryError):
    """Registry is frozen and cannot be modified."""

    pass


class DuplicateRegistrationError(RegistryError):
    """Entity type with this name is already registered."""

    pass


class UnknownEntityError(RegistryError):
    """No entity type registered under this name or model."""

    pass
