"""
Document snapshots returned by the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from . import codec
from .backend.base import StoredDocument


@dataclass
class Document:
    """A document read from the store, in native form.

    Attributes:
        id: Document ID, unique within its collection
        path: Full document path
        data: Field values (datetimes for timestamps)
        create_time: When the document was first written
        update_time: When the document was last written
    """

    id: str
    path: str
    data: dict[str, Any] = field(default_factory=dict)
    create_time: datetime | None = None
    update_time: datetime | None = None

    @classmethod
    def from_stored(cls, stored: StoredDocument) -> Document:
        return cls(
            id=stored.doc_id,
            path=stored.path,
            data=codec.from_storage(stored.data),
            create_time=stored.create_time.to_datetime(),
            update_time=stored.update_time.to_datetime(),
        )

    @property
    def collection_path(self) -> str:
        return self.path.rsplit("/", 1)[0]

    def get(self, field_path: str, default: Any = None) -> Any:
        """Read a possibly nested field using dotted notation ("a.b.c")."""
        value: Any = self.data
        for part in field_path.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def __contains__(self, key: str) -> bool:
        return key in self.data

    def to_dict(self) -> dict[str, Any]:
        """Field values annotated with the document ID."""
        return {**self.data, "id": self.id}
