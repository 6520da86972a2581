"""
Event Notifier

In-memory publish/subscribe keyed by query ID. Subscribers join a query's
"room" and receive events published after they joined; there is no
persistence or replay. Delivery is at-most-once: a subscriber whose
queue is full misses the event.
"""
import asyncio
from typing import Any, Dict, Set

from app.core.logging import get_logger
from app.schemas.events import EventType, QueryEvent

logger = get_logger(__name__)


class Subscription:
    """One subscriber's view of a query's event stream."""

    def __init__(self, query_id: str, maxsize: int):
        self.query_id = query_id
        self.queue: "asyncio.Queue[QueryEvent]" = asyncio.Queue(maxsize=maxsize)

    async def get(self) -> QueryEvent:
        return await self.queue.get()


class EventNotifier:
    """Fan-out of query events to live subscribers."""

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._rooms: Dict[str, Set[Subscription]] = {}

    def subscribe(self, query_id: str) -> Subscription:
        subscription = Subscription(query_id, self._queue_size)
        self._rooms.setdefault(query_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.query_id)
        if room is None:
            return
        room.discard(subscription)
        if not room:
            del self._rooms[subscription.query_id]

    def subscriber_count(self, query_id: str) -> int:
        return len(self._rooms.get(query_id, ()))

    def publish(self, query_id: str, event_type: EventType, payload: Dict[str, Any]) -> int:
        """
        Deliver an event to everyone currently subscribed to the query.

        Returns:
            Number of subscribers that received the event
        """
        event = QueryEvent(type=event_type, query_id=query_id, data=payload)
        delivered = 0
        for subscription in list(self._rooms.get(query_id, ())):
            try:
                subscription.queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event_type.value} for slow subscriber of query {query_id}")
        return delivered
