"""
Event Streaming - In-memory pub/sub for execution progress.

The executor publishes an event whenever an action starts, is retried or
reaches a terminal state. Subscribers (the CLI progress printer, tests)
consume them through an async iterator.
"""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from models import ChangeAction

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of execution events."""

    STARTED = "STARTED"
    RETRYING = "RETRYING"
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass
class ActionEvent:
    """Event emitted as an action progresses."""

    event_type: EventType
    resource_id: str
    action: str
    message: str
    attempt: int
    timestamp: str

    def to_json(self) -> str:
        """Serialize the event as a single JSON line."""
        return json.dumps(
            {
                "event_type": self.event_type.value,
                "resource_id": self.resource_id,
                "action": self.action,
                "message": self.message,
                "attempt": self.attempt,
                "timestamp": self.timestamp,
            }
        )

    def describe(self) -> str:
        """One-line human-readable description."""
        text = f"{self.resource_id}: {self.action} {self.event_type.value.lower()}"
        if self.message:
            text += f" ({self.message})"
        return text

    @classmethod
    def from_action(
        cls,
        event_type: EventType,
        action: ChangeAction,
        message: str = "",
        attempt: int = 0,
    ) -> "ActionEvent":
        """
        Create an event for a planned action.

        Args:
            event_type: The type of event.
            action: The action the event is about.
            message: Optional detail (error text, retry delay).
            attempt: Provider call attempt number, when relevant.

        Returns:
            A new ActionEvent instance.
        """
        return cls(
            event_type=event_type,
            resource_id=str(action.id),
            action=action.label,
            message=message,
            attempt=attempt,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


EventFilter = Callable[[ActionEvent], bool]


class EventSubscription:
    """
    One subscriber's buffered view of the bus.

    Events that pass the filter are queued; when the queue is full they are
    dropped and counted so a slow consumer never holds up the executor.
    Iteration ends once the subscription is closed and drained.
    """

    def __init__(self, queue_size: int = 256, filter_fn: Optional[EventFilter] = None):
        self.id = str(uuid.uuid4())
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._filter_fn = filter_fn
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: ActionEvent) -> bool:
        """Queue an event without blocking. Returns whether it was queued."""
        if self._closed:
            return False
        if self._filter_fn is not None and not self._filter_fn(event):
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        """Mark the end of the stream."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            # The oldest event gives way to the end-of-stream marker
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ActionEvent]:
        return self

    async def __anext__(self) -> ActionEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """In-memory fan-out of execution events to every open subscription."""

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscriptions: Dict[str, EventSubscription] = {}

    async def publish(self, event: ActionEvent) -> None:
        """Hand an event to every subscriber (never blocks)."""
        for subscription in list(self._subscriptions.values()):
            subscription.offer(event)

    async def subscribe(
        self, filter_fn: Optional[EventFilter] = None
    ) -> Tuple[str, EventSubscription]:
        """
        Open a subscription.

        Args:
            filter_fn: Optional predicate; only matching events are queued.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscription = EventSubscription(self._queue_size, filter_fn)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"New event subscriber: {subscription.id}")
        return subscription.id, subscription

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Close a subscription; its iterator ends after the buffered events."""
        subscription = self._subscriptions.pop(subscriber_id, None)
        if subscription is None:
            return
        subscription.close()
        if subscription.dropped:
            logger.warning(
                f"Subscriber {subscriber_id} missed {subscription.dropped} event(s)"
            )
        logger.debug(f"Unsubscribed: {subscriber_id}")

    @asynccontextmanager
    async def subscription(
        self, filter_fn: Optional[EventFilter] = None
    ) -> AsyncIterator[EventSubscription]:
        """Subscribe for the duration of a ``async with`` block."""
        subscriber_id, subscription = await self.subscribe(filter_fn)
        try:
            yield subscription
        finally:
            await self.unsubscribe(subscriber_id)

    def subscriber_count(self) -> int:
        return len(self._subscriptions)
