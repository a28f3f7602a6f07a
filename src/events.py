"""
Event Streaming - In-memory pub/sub for object change events.

Stores publish an event for every successful write. The controller
subscribes to turn those into reconcile requests, and the HTTP API
exposes them as a Server-Sent Events watch stream.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import ObjectKey

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of object events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class ObjectEvent:
    """Event emitted when a stored object changes."""

    event_type: EventType
    kind: str
    namespace: str
    name: str
    resource_version: Optional[str]
    object_data: Dict[str, Any]
    timestamp: str

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.namespace, name=self.name)

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "event_type": self.event_type.value,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "resource_version": self.resource_version,
            "object": self.object_data,
            "timestamp": self.timestamp,
        }
        return f"event: {self.event_type.value}\ndata: {json.dumps(data)}\n\n"

    @classmethod
    def from_object(cls, event_type: EventType, obj: Any) -> "ObjectEvent":
        """
        Create an event from a stored object.

        Args:
            event_type: The type of event.
            obj: A GuestBook or Deployment.

        Returns:
            A new ObjectEvent instance.
        """
        return cls(
            event_type=event_type,
            kind=obj.KIND,
            namespace=obj.metadata.namespace,
            name=obj.metadata.name,
            resource_version=obj.metadata.resource_version,
            object_data=obj.to_dict(),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[ObjectEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[ObjectEvent]:
        return self

    async def __anext__(self) -> ObjectEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Keeps an ``asyncio.Queue`` per subscriber. Full queues drop events
    rather than block the publisher; the controller's periodic resync
    covers anything lost that way.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ObjectEvent) -> None:
        """Publish an event to all subscribers without blocking."""
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped {event.kind} event for subscriber {subscriber_id}: "
                    f"queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ObjectEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and stop its iterator.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # Drain one slot so the sentinel always gets through
                queue.get_nowait()
                queue.put_nowait(None)
            logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
