"""
Write batches: several mutations committed all-or-nothing.

Every mutation the store performs, single or batched, is expressed as a
PreparedOperation: a validated path plus storage-form data. A WriteBatch
prepares each operation as it is added, so a bad path or an unsupported
value fails at add() time, before anything is committed.

Invariants:
    - A batch is single-use: commit() or add() after the first commit()
      raises BatchSpentError, whether or not that commit succeeded
    - On commit, either every operation takes effect or none does
    - Operations on the same path apply in the order they were added

How to change safely:
    - New operation kinds need a branch in PreparedOperation.apply()
    - Keep all validation in prepare(); apply() may only fail on state
      (missing or already existing documents)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from . import codec
from .backend.base import StoredDocument
from .errors import AlreadyExistsError, BatchError, BatchSpentError, CodecError, NotFoundError
from .paths import ParsedPath, validate_document_path
from .timestamp import Timestamp
from .transforms import DeleteField, apply_patch

if TYPE_CHECKING:
    from .store import DocumentStore

logger = logging.getLogger(__name__)


class OperationKind(Enum):
    """Kinds of mutation."""

    CREATE = "create"
    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class BatchOperation:
    """One mutation in native form.

    Attributes:
        kind: Mutation kind
        path: Target document path
        data: Field values (not used by delete)
        merge: For set, shallow-merge into the existing document
    """

    kind: OperationKind
    path: str
    data: dict[str, Any] | None = None
    merge: bool = False

    def prepare(self) -> PreparedOperation:
        """Validate the path and convert the data to storage form.

        Raises:
            PathError: If the path is not a document path
            CodecError: If the data cannot be stored
        """
        parsed = validate_document_path(self.path)

        if self.kind is OperationKind.DELETE:
            return PreparedOperation(self.kind, parsed, {}, merge=False)

        merging = self.kind is OperationKind.UPDATE or (self.kind is OperationKind.SET and self.merge)
        data = codec.encode_document(self.data, allow_transforms=True)
        if not merging:
            for key, value in data.items():
                if isinstance(value, DeleteField):
                    raise CodecError(
                        "delete_field() requires update() or set(merge=True)",
                        field_path=key,
                    )
        return PreparedOperation(self.kind, parsed, data, merge=merging)


@dataclass(frozen=True)
class PreparedOperation:
    """A validated mutation ready to apply against stored state."""

    kind: OperationKind
    target: ParsedPath
    data: dict[str, Any]
    merge: bool

    @property
    def path(self) -> str:
        return self.target.path

    def apply(self, existing: StoredDocument | None, now: Timestamp) -> StoredDocument | None:
        """Compute the document state after this operation.

        Args:
            existing: Current state (None if absent)
            now: Commit time

        Returns:
            New state, or None if the document is deleted

        Raises:
            NotFoundError: update() of an absent document
            AlreadyExistsError: create() of an existing document
        """
        if self.kind is OperationKind.DELETE:
            return None

        if self.kind is OperationKind.UPDATE and existing is None:
            raise NotFoundError(f"No document to update: {self.path}", path=self.path)
        if self.kind is OperationKind.CREATE and existing is not None:
            raise AlreadyExistsError(f"Document already exists: {self.path}", path=self.path)

        base = existing.data if (existing is not None and self.merge) else {}
        return StoredDocument(
            collection_path=self.target.collection_path,
            doc_id=self.target.id,
            data=apply_patch(base, self.data, now),
            create_time=existing.create_time if existing is not None else now,
            update_time=now,
        )


class WriteBatch:
    """Queue of mutations committed atomically.

    Example:
        >>> batch = store.batch()
        >>> batch.set("users/u1", {"name": "Alice"})
        >>> batch.update("users/u2", {"visits": increment(1)})
        >>> batch.delete("users/u3")
        >>> await batch.commit()
    """

    def __init__(self, store: DocumentStore, max_size: int = 500) -> None:
        self._store = store
        self._max_size = max_size
        self._operations: list[PreparedOperation] = []
        self._spent = False

    @property
    def spent(self) -> bool:
        return self._spent

    @property
    def operations(self) -> list[PreparedOperation]:
        return list(self._operations)

    def __len__(self) -> int:
        return len(self._operations)

    def add(self, operation: BatchOperation) -> WriteBatch:
        """Queue an operation.

        Raises:
            BatchSpentError: If the batch was already committed
            BatchError: If the batch is full
            PathError: If the operation's path is invalid
            CodecError: If the operation's data cannot be stored
        """
        if self._spent:
            raise BatchSpentError()
        if len(self._operations) >= self._max_size:
            raise BatchError(
                f"Batch cannot hold more than {self._max_size} operations",
                index=len(self._operations),
                path=operation.path,
            )
        self._operations.append(operation.prepare())
        return self

    def create(self, path: str, data: dict[str, Any]) -> WriteBatch:
        return self.add(BatchOperation(OperationKind.CREATE, path, data))

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> WriteBatch:
        return self.add(BatchOperation(OperationKind.SET, path, data, merge=merge))

    def update(self, path: str, data: dict[str, Any]) -> WriteBatch:
        return self.add(BatchOperation(OperationKind.UPDATE, path, data))

    def delete(self, path: str) -> WriteBatch:
        return self.add(BatchOperation(OperationKind.DELETE, path))

    async def commit(self) -> None:
        """Apply every queued operation atomically.

        Raises:
            BatchSpentError: If the batch was already committed
            BatchError: If any operation fails; nothing is applied
            RateLimitError: If the general rate ceiling is exceeded
        """
        if self._spent:
            raise BatchSpentError()
        self._spent = True

        logger.debug("Committing batch", extra={"operations": len(self._operations)})
        await self._store._commit_batch(self._operations)
