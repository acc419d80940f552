"""
Path parsing and validation for PathDB.

Resources are addressed by slash-separated paths of alternating
collection and document segments:

    users                   collection (1 segment)
    users/u1                document   (2 segments)
    users/u1/items          collection (3 segments)
    users/u1/items/i1       document   (4 segments)

Pure functions with no I/O - fully testable.

Invariants:
    - Collection paths have an odd number of segments
    - Document paths have an even, non-zero number of segments
    - Segments are never empty
    - Shape checks (empty, leading/trailing separator) run before parity checks
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .errors import PathError

SEPARATOR = "/"


class PathKind(Enum):
    """Kind of resource a path addresses."""

    COLLECTION = "collection"
    DOCUMENT = "document"


@dataclass(frozen=True)
class ParsedPath:
    """A validated path split into segments.

    Attributes:
        segments: Path segments in order
        kind: Whether the path addresses a collection or a document
    """

    segments: tuple[str, ...]
    kind: PathKind

    @property
    def path(self) -> str:
        return SEPARATOR.join(self.segments)

    @property
    def id(self) -> str:
        """Last segment: document ID or collection ID."""
        return self.segments[-1]

    @property
    def collection_path(self) -> str:
        """Collection holding this document, or the collection itself."""
        if self.kind is PathKind.DOCUMENT:
            return SEPARATOR.join(self.segments[:-1])
        return self.path

    @property
    def parent(self) -> str | None:
        """Parent path (collection of a document, owning document of a subcollection)."""
        if len(self.segments) == 1:
            return None
        return SEPARATOR.join(self.segments[:-1])

    def child(self, segment: str) -> ParsedPath:
        """Append one segment, flipping the kind."""
        kind = PathKind.DOCUMENT if self.kind is PathKind.COLLECTION else PathKind.COLLECTION
        return _parse(SEPARATOR.join((*self.segments, segment)), kind)

    def __str__(self) -> str:
        return self.path


def _check_shape(path: str, kind: PathKind) -> list[str]:
    if not isinstance(path, str) or not path:
        raise PathError("Path cannot be empty", path=str(path), kind=kind.value)
    if path.startswith(SEPARATOR) or path.endswith(SEPARATOR):
        raise PathError("Path cannot start or end with '/'", path=path, kind=kind.value)
    segments = path.split(SEPARATOR)
    if any(not s for s in segments):
        raise PathError("Path cannot contain empty segments", path=path, kind=kind.value)
    return segments


def _parse(path: str, kind: PathKind) -> ParsedPath:
    segments = _check_shape(path, kind)

    if kind is PathKind.COLLECTION:
        if len(segments) % 2 != 1:
            raise PathError(
                "Collection path must have an odd number of segments "
                "(e.g., 'users' or 'users/123/posts')",
                path=path,
                kind=kind.value,
            )
    else:
        if len(segments) % 2 != 0:
            raise PathError(
                "Document path must have an even number of segments "
                "(e.g., 'users/123' or 'users/123/posts/456')",
                path=path,
                kind=kind.value,
            )

    return ParsedPath(segments=tuple(segments), kind=kind)


def validate_collection_path(path: str) -> ParsedPath:
    """Validate and parse a collection path.

    Args:
        path: Slash-separated path

    Returns:
        ParsedPath with kind COLLECTION

    Raises:
        PathError: If the path is malformed or has an even segment count
    """
    return _parse(path, PathKind.COLLECTION)


def validate_document_path(path: str) -> ParsedPath:
    """Validate and parse a document path.

    Args:
        path: Slash-separated path

    Returns:
        ParsedPath with kind DOCUMENT

    Raises:
        PathError: If the path is malformed or has an odd segment count
    """
    return _parse(path, PathKind.DOCUMENT)


def validate_path(path: str, kind: PathKind) -> ParsedPath:
    """Validate a path for the given resource kind."""
    return _parse(path, kind)


def parse_path(path: str) -> ParsedPath:
    """Parse a path, inferring its kind from the segment count."""
    segments = _check_shape(path, PathKind.DOCUMENT)
    kind = PathKind.COLLECTION if len(segments) % 2 == 1 else PathKind.DOCUMENT
    return ParsedPath(segments=tuple(segments), kind=kind)


def document_path(collection_path: str, doc_id: str) -> str:
    """Join a collection path and a document ID into a document path."""
    if SEPARATOR in doc_id:
        raise PathError("Document ID cannot contain '/'", path=doc_id, kind="document")
    return validate_collection_path(collection_path).child(doc_id).path
