"""
Typed event system for the commit tracer services.

This module provides:
- Typed event definitions for feed monitoring and commit processing
- Producer-owned event channels with per-subscriber queues
- Listener tasks that dispatch events to async handlers
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Optional, Set, TypeVar
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from shared.models import CommitChain, DetectedCommit, ProjectConfig, ProjectId, QueuedCommit


logger = logging.getLogger(__name__)


class EventType(Enum):
    """Event types emitted by the feed monitor and commit processor."""

    # Feed monitor events
    COMMIT_DETECTED = "commit.detected"
    POLL_ERROR = "monitor.poll_error"
    MONITOR_STARTED = "monitor.started"
    MONITOR_STOPPED = "monitor.stopped"
    POLL_STARTED = "monitor.poll_started"
    POLL_COMPLETED = "monitor.poll_completed"

    # Commit processor events
    COMMIT_QUEUED = "processor.commit_queued"
    COMMIT_PROCESSING = "processor.commit_processing"
    COMMIT_PROCESSED = "processor.commit_processed"
    QUEUE_EMPTY = "processor.queue_empty"


class EventSource(Enum):
    """Event source components."""
    FEED_MONITOR = "feed_monitor"
    COMMIT_PROCESSOR = "commit_processor"
    SYSTEM = "system"


@dataclass
class EventMetadata:
    """Event metadata for tracking."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: EventSource = EventSource.SYSTEM


class BaseEvent(BaseModel):
    """Base event class with common functionality."""

    model_config = ConfigDict(frozen=True)

    metadata: EventMetadata = Field(default_factory=EventMetadata)
    event_type: EventType

    @property
    def event_id(self) -> str:
        return self.metadata.event_id


# Feed monitor events
class CommitDetectedEvent(BaseEvent):
    event_type: EventType = EventType.COMMIT_DETECTED
    commit: DetectedCommit
    project: ProjectConfig


class PollErrorEvent(BaseEvent):
    event_type: EventType = EventType.POLL_ERROR
    project_id: ProjectId
    branch: str
    error: str
    consecutive_failures: int


class MonitorLifecycleEvent(BaseEvent):
    """Monitor started/stopped and poll cycle boundaries."""

    event_type: EventType
    detail: Optional[str] = None


# Commit processor events
class CommitQueuedEvent(BaseEvent):
    event_type: EventType = EventType.COMMIT_QUEUED
    commit: QueuedCommit


class CommitProcessingEvent(BaseEvent):
    event_type: EventType = EventType.COMMIT_PROCESSING
    commit: QueuedCommit


class CommitProcessedEvent(BaseEvent):
    """Terminal outcome of a queued commit; ``chain`` is set on success."""

    event_type: EventType = EventType.COMMIT_PROCESSED
    commit: QueuedCommit
    success: bool
    error: Optional[str] = None
    chain: Optional[CommitChain] = None


class QueueEmptyEvent(BaseEvent):
    event_type: EventType = EventType.QUEUE_EMPTY


E = TypeVar("E", bound=BaseEvent)


class SubscriptionClosed(Exception):
    """Raised by ``Subscription.get`` once the subscription has been closed and drained."""


_CLOSED = object()


class Subscription(Generic[E]):
    """
    One subscriber's view of an ``EventChannel``.

    Each subscription owns an unbounded queue, so a slow consumer never blocks
    the producer or other subscribers.
    """

    def __init__(self, channel: "EventChannel[E]"):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, event: E) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self) -> E:
        if self._closed and self._queue.empty():
            raise SubscriptionClosed()
        item = await self._queue.get()
        if item is _CLOSED:
            raise SubscriptionClosed()
        return item

    def get_nowait(self) -> Optional[E]:
        """Return the next queued event, or None when nothing is waiting."""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        if item is _CLOSED:
            return None
        return item

    def drain(self) -> List[E]:
        """Return every event currently queued, oldest first."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel._remove(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> E:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


class EventChannel(Generic[E]):
    """
    Typed fan-out channel owned by a single producer.

    Example:
        >>> channel: EventChannel[BaseEvent] = EventChannel("monitor")
        >>> subscription = channel.subscribe()
        >>> channel.publish(event)
        >>> received = await subscription.get()
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._subscriptions: List[Subscription[E]] = []
        self._listeners: Set[asyncio.Task] = set()
        self.published_count = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self) -> Subscription[E]:
        subscription: Subscription[E] = Subscription(self)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription[E]) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: E) -> None:
        """Deliver ``event`` to every open subscription without blocking."""
        self.published_count += 1
        for subscription in list(self._subscriptions):
            subscription._put(event)

    def listen(
        self,
        handler: Callable[[E], Awaitable[Any]],
        event_types: Optional[Set[EventType]] = None,
    ) -> asyncio.Task:
        """
        Start a task that awaits ``handler`` for each published event.

        Handler exceptions are logged and the listener keeps consuming.
        """
        subscription = self.subscribe()

        async def _consume():
            try:
                async for event in subscription:
                    if event_types and event.event_type not in event_types:
                        continue
                    try:
                        await handler(event)
                    except Exception as e:
                        logger.error(f"Event handler failed on {self.name} for {event.event_type.value}: {e}")
            finally:
                subscription.close()

        task = asyncio.create_task(_consume(), name=f"{self.name}-listener")
        self._listeners.add(task)
        task.add_done_callback(self._listeners.discard)
        return task

    def close(self) -> None:
        """Close every subscription; listener tasks finish once their queues drain."""
        for subscription in list(self._subscriptions):
            subscription.close()


__all__ = [
    'EventType', 'EventSource', 'EventMetadata', 'BaseEvent',
    'CommitDetectedEvent', 'PollErrorEvent', 'MonitorLifecycleEvent',
    'CommitQueuedEvent', 'CommitProcessingEvent', 'CommitProcessedEvent', 'QueueEmptyEvent',
    'Subscription', 'SubscriptionClosed', 'EventChannel',
]
