"""
Typed entity layer for PathDB.

Entities are plain pydantic models. Persistence is described separately
by an EntityType: a registered descriptor binding a model class to a
collection-path template and owning the explicit decode/encode pair.
A Repository runs store operations for one EntityType and hands back
typed models.

    EntityType(model=Item, collection="users/{user_id}/items")
        |
        +-- decode(Document) -> Item
        +-- encode(Item) -> dict
        |
    Repository(store, item_type).get("i1", user_id="u1") -> Item | None

The registry is frozen at startup to prevent runtime modifications.

Example:
    >>> class User(BaseModel):
    ...     id: str | None = None
    ...     name: str
    >>> users = EntityType(User, "users")
    >>> get_registry().register(users)
    >>> repo = Repository(store, users)
    >>> alice = await repo.create(User(name="Alice"))
"""

from __future__ import annotations

import logging
import string
import threading
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from pydantic import BaseModel

from .document import Document
from .errors import (
    DuplicateRegistrationError,
    PathError,
    RegistryFrozenError,
    UnknownEntityError,
)
from .feed import Subscription
from .paths import document_path, validate_collection_path
from .query import QueryOptions

if TYPE_CHECKING:
    from .store import DocumentStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Global registry
_global_registry: EntityRegistry | None = None
_registry_lock = threading.Lock()


class EntityType(Generic[M]):
    """Descriptor binding a pydantic model to a collection.

    Args:
        model: pydantic model class
        collection: Collection path template; ``{name}`` placeholders are
            filled from keyword arguments or from the entity's fields
        name: Registry name (defaults to the model class name)
        id_field: Model field holding the document ID; never stored as data
    """

    def __init__(
        self,
        model: type[M],
        collection: str,
        name: str | None = None,
        id_field: str = "id",
    ) -> None:
        self.model = model
        self.collection = collection
        self.name = name or model.__name__
        self.id_field = id_field
        self.placeholders = tuple(
            field for _, field, _, _ in string.Formatter().parse(collection) if field
        )

    def collection_path(self, entity: M | None = None, **params: Any) -> str:
        """Resolve the collection path template.

        Raises:
            PathError: If a placeholder has no value or the result is invalid
        """
        values = {}
        for placeholder in self.placeholders:
            if placeholder in params:
                value = params[placeholder]
            elif entity is not None and getattr(entity, placeholder, None) is not None:
                value = getattr(entity, placeholder)
            else:
                raise PathError(
                    f"No value for '{placeholder}' in collection path '{self.collection}'",
                    path=self.collection,
                    kind="collection",
                )
            values[placeholder] = str(value)
        path = self.collection.format(**values) if self.placeholders else self.collection
        return validate_collection_path(path).path

    def document_path(self, doc_id: str, entity: M | None = None, **params: Any) -> str:
        return document_path(self.collection_path(entity, **params), doc_id)

    def id_of(self, entity: M) -> str | None:
        return getattr(entity, self.id_field, None)

    def decode(self, document: Document) -> M:
        """Build a model from a stored document; the ID fills ``id_field``."""
        return self.model.model_validate({**document.data, self.id_field: document.id})

    def encode(self, entity: M) -> dict[str, Any]:
        """Model fields to store, without the ID field."""
        return entity.model_dump(exclude={self.id_field})

    def __repr__(self) -> str:
        return f"EntityType({self.name!r}, collection={self.collection!r})"


class EntityRegistry:
    """Registry of entity types, looked up by name or model class.

    Example:
        >>> registry = EntityRegistry()
        >>> registry.register(EntityType(User, "users"))
        >>> registry.freeze()
    """

    def __init__(self) -> None:
        self._by_name: dict[str, EntityType[Any]] = {}
        self._by_model: dict[type[BaseModel], EntityType[Any]] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether registry is frozen."""
        return self._frozen

    def register(self, entity_type: EntityType[M]) -> EntityType[M]:
        """Register an entity type.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name or model is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Cannot register: registry is frozen", name=entity_type.name)

            if entity_type.name in self._by_name:
                existing = self._by_name[entity_type.name]
                raise DuplicateRegistrationError(
                    f"'{entity_type.name}' already registered for collection '{existing.collection}'",
                    name=entity_type.name,
                )
            if entity_type.model in self._by_model:
                existing = self._by_model[entity_type.model]
                raise DuplicateRegistrationError(
                    f"Model {entity_type.model.__name__} already registered as '{existing.name}'",
                    name=entity_type.name,
                )

            self._by_name[entity_type.name] = entity_type
            self._by_model[entity_type.model] = entity_type
        logger.debug("Registered entity type", extra={"entity": entity_type.name})
        return entity_type

    def get(self, name_or_model: str | type[BaseModel]) -> EntityType[Any]:
        """Look up an entity type.

        Raises:
            UnknownEntityError: If nothing is registered under that key
        """
        if isinstance(name_or_model, str):
            found = self._by_name.get(name_or_model)
            label = name_or_model
        else:
            found = self._by_model.get(name_or_model)
            label = name_or_model.__name__
        if found is None:
            raise UnknownEntityError(f"Unknown entity type: {label}", name=label)
        return found

    def __contains__(self, name_or_model: object) -> bool:
        return name_or_model in self._by_name or name_or_model in self._by_model

    def entity_types(self) -> Iterator[EntityType[Any]]:
        """Iterate over all entity types."""
        yield from self._by_name.values()

    def freeze(self) -> None:
        """Prevent further registrations.

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            self._frozen = True


def get_registry() -> EntityRegistry:
    """Get the global entity registry."""
    global _global_registry
    with _registry_lock:
        if _global_registry is None:
            _global_registry = EntityRegistry()
        return _global_registry


def register_entity(entity_type: EntityType[M]) -> EntityType[M]:
    """Register an entity type in the global registry."""
    return get_registry().register(entity_type)


def reset_registry() -> None:
    """Reset the global registry (for testing only)."""
    global _global_registry
    with _registry_lock:
        _global_registry = None


class TypedSubscription(Generic[M]):
    """Subscription whose snapshots are decoded into models."""

    def __init__(self, subscription: Subscription, decode: Callable[[Any], Any]) -> None:
        self.subscription = subscription
        self._decode = decode

    @property
    def active(self) -> bool:
        return self.subscription.active

    def cancel(self) -> None:
        self.subscription.cancel()

    async def join(self) -> None:
        await self.subscription.join()

    def __aiter__(self) -> TypedSubscription[M]:
        self.subscription.__aiter__()
        return self

    async def __anext__(self) -> Any:
        return self._decode(await self.subscription.__anext__())


class Repository(Generic[M]):
    """Store operations for one entity type, returning typed models.

    Path parameters for templated collections are passed as keyword
    arguments (``user_id="u1"``) or, where an entity is given, read from
    its fields.
    """

    def __init__(self, store: DocumentStore, entity_type: EntityType[M]) -> None:
        self.store = store
        self.entity_type = entity_type

    def _decode_one(self, document: Document | None) -> M | None:
        return self.entity_type.decode(document) if document is not None else None

    def _decode_many(self, documents: list[Document]) -> list[M]:
        return [self.entity_type.decode(d) for d in documents]

    async def get(self, doc_id: str, **params: Any) -> M | None:
        document = await self.store.get(self.entity_type.document_path(doc_id, **params))
        return self._decode_one(document)

    async def create(self, entity: M, **params: Any) -> M:
        """Add the entity, using its ID field if set, and return it with the ID."""
        collection = self.entity_type.collection_path(entity, **params)
        new_id = await self.store.add(
            collection,
            self.entity_type.encode(entity),
            doc_id=self.entity_type.id_of(entity),
        )
        return entity.model_copy(update={self.entity_type.id_field: new_id})

    async def save(self, entity: M, merge: bool = False, **params: Any) -> M:
        """Write an entity that already has an ID.

        Raises:
            ValueError: If the entity has no ID (use create())
        """
        doc_id = self.entity_type.id_of(entity)
        if doc_id is None:
            raise ValueError(f"Cannot save {self.entity_type.name} without an ID; use create()")
        path = self.entity_type.document_path(doc_id, entity, **params)
        await self.store.set(path, self.entity_type.encode(entity), merge=merge)
        return entity

    async def update(self, doc_id: str, data: dict[str, Any], **params: Any) -> None:
        await self.store.update(self.entity_type.document_path(doc_id, **params), data)

    async def delete(self, doc_id: str, **params: Any) -> None:
        await self.store.delete(self.entity_type.document_path(doc_id, **params))

    async def list(self, **params: Any) -> list[M]:
        documents = await self.store.list_collection(self.entity_type.collection_path(**params))
        return self._decode_many(documents)

    async def query(
        self,
        options: QueryOptions | None = None,
        path_params: dict[str, Any] | None = None,
        **query_kwargs: Any,
    ) -> list[M]:
        collection = self.entity_type.collection_path(**(path_params or {}))
        documents = await self.store.query(collection, options, **query_kwargs)
        return self._decode_many(documents)

    async def subscribe(
        self,
        doc_id: str,
        callback: Callable[[M | None], Any] | None = None,
        **params: Any,
    ) -> Subscription | TypedSubscription[M]:
        """Watch one entity; snapshots are models (None once deleted)."""
        path = self.entity_type.document_path(doc_id, **params)
        if callback is None:
            subscription = await self.store.subscribe_document(path)
            return TypedSubscription(subscription, self._decode_one)
        return await self.store.subscribe_document(path, lambda doc: callback(self._decode_one(doc)))

    async def subscribe_collection(
        self,
        callback: Callable[[list[M]], Any] | None = None,
        **params: Any,
    ) -> Subscription | TypedSubscription[M]:
        """Watch the whole collection; snapshots are lists of models."""
        path = self.entity_type.collection_path(**params)
        if callback is None:
            subscription = await self.store.subscribe_collection(path)
            return TypedSubscription(subscription, self._decode_many)
        return await self.store.subscribe_collection(
            path, lambda docs: callback(self._decode_many(docs))
        )
