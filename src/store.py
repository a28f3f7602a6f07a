"""
State Store - interface to the declarative object store.

The reconciler depends only on the StateStore contract below. Reads
return ``None`` for a missing object; writes raise one of the
StoreError subclasses so that "not found", "conflict" and everything
else stay distinguishable for the caller.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from events import EventBus, EventType, ObjectEvent
from models import ObjectKey, StoredObject, kind_for_name

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=StoredObject)


class StoreError(Exception):
    """A store operation failed (network, timeout, backend error)."""


class NotFoundError(StoreError):
    """The object does not exist."""


class ConflictError(StoreError):
    """The object changed since it was read (stale resource version)."""


class AlreadyExistsError(ConflictError):
    """An object with the same key already exists."""


class StateStore(ABC):
    """
    Abstract base class for object stores.

    Implementations assign a new opaque ``resource_version`` on every
    write and publish an ObjectEvent to the event bus, if one is set.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._event_bus = event_bus

    def set_event_bus(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    async def _publish(self, event_type: EventType, obj: StoredObject) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(ObjectEvent.from_object(event_type, obj))

    @abstractmethod
    async def get(self, kind: Type[T], key: ObjectKey) -> Optional[T]:
        """
        Fetch an object.

        Args:
            kind: Model class (GuestBook, Deployment).
            key: Namespace and name.

        Returns:
            A fresh copy of the object, or None if it does not exist.

        Raises:
            StoreError: If the backend could not be read.
        """
        pass

    @abstractmethod
    async def list(self, kind: Type[T], namespace: Optional[str] = None) -> List[T]:
        """List objects of a kind, sorted by namespace and name."""
        pass

    @abstractmethod
    async def create(self, obj: T) -> T:
        """
        Create an object.

        Returns:
            The stored object with its resource_version set.

        Raises:
            AlreadyExistsError: If an object with the same key exists.
            StoreError: On any other failure.
        """
        pass

    @abstractmethod
    async def update(self, obj: T) -> T:
        """
        Replace an object, guarded by its resource_version.

        Returns:
            The stored object with its new resource_version.

        Raises:
            NotFoundError: If the object does not exist.
            ConflictError: If obj.metadata.resource_version is not current.
            StoreError: On any other failure.
        """
        pass

    @abstractmethod
    async def delete(self, kind: Type[T], key: ObjectKey) -> None:
        """
        Delete an object and, transitively, the objects it controls.

        Raises:
            NotFoundError: If the object does not exist.
            StoreError: On any other failure.
        """
        pass


class MemoryStore(StateStore):
    """
    Dict-backed StateStore.

    Objects are kept as plain dicts and copied on every read and write,
    so callers can never mutate stored state behind the store's back.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        super().__init__(event_bus)
        self._objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    @staticmethod
    def _index(kind: str, key: ObjectKey) -> Tuple[str, str, str]:
        return (kind, key.namespace, key.name)

    async def get(self, kind: Type[T], key: ObjectKey) -> Optional[T]:
        data = self._objects.get(self._index(kind.KIND, key))
        if data is None:
            return None
        return kind.from_dict(copy.deepcopy(data))

    async def list(self, kind: Type[T], namespace: Optional[str] = None) -> List[T]:
        items = [
            kind.from_dict(copy.deepcopy(data))
            for (k, ns, _), data in sorted(self._objects.items())
            if k == kind.KIND and (namespace is None or ns == namespace)
        ]
        return items

    async def create(self, obj: T) -> T:
        index = self._index(obj.KIND, obj.key)
        if index in self._objects:
            raise AlreadyExistsError(f"{obj.KIND} {obj.key} already exists")

        stored = obj.copy()
        stored.metadata.resource_version = self._next_version()
        self._objects[index] = stored.to_dict()
        logger.debug(f"Created {obj.KIND} {obj.key}")

        await self._publish(EventType.CREATED, stored)
        return stored.copy()

    async def update(self, obj: T) -> T:
        index = self._index(obj.KIND, obj.key)
        current = self._objects.get(index)
        if current is None:
            raise NotFoundError(f"{obj.KIND} {obj.key} not found")

        current_version = current["metadata"]["resource_version"]
        if obj.metadata.resource_version != current_version:
            raise ConflictError(
                f"{obj.KIND} {obj.key} has been modified: resource version "
                f"{obj.metadata.resource_version} is stale (current {current_version})"
            )

        stored = obj.copy()
        stored.metadata.resource_version = self._next_version()
        self._objects[index] = stored.to_dict()
        logger.debug(f"Updated {obj.KIND} {obj.key}")

        await self._publish(EventType.MODIFIED, stored)
        return stored.copy()

    async def delete(self, kind: Type[T], key: ObjectKey) -> None:
        index = self._index(kind.KIND, key)
        data = self._objects.pop(index, None)
        if data is None:
            raise NotFoundError(f"{kind.KIND} {key} not found")

        deleted = kind.from_dict(data)
        logger.debug(f"Deleted {kind.KIND} {key}")
        await self._publish(EventType.DELETED, deleted)
        await self._collect_dependents(kind.KIND, key)

    async def _collect_dependents(self, owner_kind: str, owner_key: ObjectKey) -> None:
        """Delete every object controlled by the given owner."""
        for index, data in list(self._objects.items()):
            kind_name, namespace, name = index
            if namespace != owner_key.namespace or index not in self._objects:
                continue
            for ref in data["metadata"].get("owner_references") or []:
                if ref["kind"] == owner_kind and ref["name"] == owner_key.name:
                    logger.info(
                        f"Garbage collecting {kind_name} {namespace}/{name} "
                        f"owned by {owner_kind} {owner_key}"
                    )
                    await self.delete(
                        kind_for_name(kind_name), ObjectKey(namespace, name)
                    )
                    break
