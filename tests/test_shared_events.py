"""
Unit tests for shared events module.
"""

import asyncio

import pytest
from pydantic import ValidationError

from shared.events import (
    BaseEvent,
    CommitDetectedEvent,
    CommitProcessedEvent,
    EventChannel,
    EventMetadata,
    EventSource,
    EventType,
    MonitorLifecycleEvent,
    PollErrorEvent,
    QueueEmptyEvent,
    SubscriptionClosed,
)
from shared.models import DetectedCommit, ProjectConfig, QueuedCommit


def lifecycle(event_type=EventType.MONITOR_STARTED, detail=None):
    return MonitorLifecycleEvent(
        metadata=EventMetadata(source=EventSource.FEED_MONITOR),
        event_type=event_type,
        detail=detail,
    )


def poll_error(failures=1):
    return PollErrorEvent(project_id=42, branch="main", error="boom", consecutive_failures=failures)


class TestEventTypes:
    """Test cases for event enums and event models."""

    def test_event_type_values(self):
        """Test EventType values."""
        assert EventType.COMMIT_DETECTED.value == "commit.detected"
        assert EventType.POLL_ERROR.value == "monitor.poll_error"
        assert EventType.COMMIT_PROCESSED.value == "processor.commit_processed"
        assert EventType.QUEUE_EMPTY.value == "processor.queue_empty"

    def test_metadata_defaults(self):
        """Test every event gets a unique id and a timestamp."""
        first, second = QueueEmptyEvent(), QueueEmptyEvent()

        assert first.event_id != second.event_id
        assert first.metadata.occurred_at.tzinfo is not None
        assert first.metadata.source == EventSource.SYSTEM

    def test_default_event_types(self):
        """Test concrete events fix their own type."""
        detected = CommitDetectedEvent(
            commit=DetectedCommit(sha="a1b2c3d4e5f6", project_id=42, branch="main"),
            project=ProjectConfig(id=42, name="Platform API", branches=["main"], enabled=True),
        )
        processed = CommitProcessedEvent(
            commit=QueuedCommit(commit=detected.commit),
            success=False,
            error="failed",
        )

        assert detected.event_type == EventType.COMMIT_DETECTED
        assert processed.event_type == EventType.COMMIT_PROCESSED
        assert processed.chain is None
        assert poll_error().event_type == EventType.POLL_ERROR

    def test_events_are_frozen(self):
        """Test events cannot be changed after publication."""
        event = poll_error()
        with pytest.raises(ValidationError):
            event.error = "changed"

    def test_lifecycle_event_requires_type(self):
        """Test lifecycle events must say which transition they describe."""
        with pytest.raises(ValidationError):
            MonitorLifecycleEvent()


class TestEventChannel:
    """Test cases for EventChannel and Subscription."""

    @pytest.mark.asyncio
    async def test_fan_out(self):
        """Test every subscriber receives every event in order."""
        channel = EventChannel("test")
        first, second = channel.subscribe(), channel.subscribe()

        channel.publish(lifecycle(EventType.MONITOR_STARTED))
        channel.publish(lifecycle(EventType.MONITOR_STOPPED))

        assert [e.event_type for e in first.drain()] == [EventType.MONITOR_STARTED, EventType.MONITOR_STOPPED]
        assert (await second.get()).event_type == EventType.MONITOR_STARTED
        assert channel.published_count == 2
        assert channel.subscriber_count == 2

    @pytest.mark.asyncio
    async def test_late_subscriber_misses_earlier_events(self):
        """Test subscriptions only see events published after they were created."""
        channel = EventChannel()
        channel.publish(lifecycle())
        subscription = channel.subscribe()

        assert subscription.get_nowait() is None

    @pytest.mark.asyncio
    async def test_close_subscription(self):
        """Test a closed subscription stops receiving and ends iteration."""
        channel = EventChannel()
        subscription = channel.subscribe()
        channel.publish(lifecycle())
        subscription.close()
        channel.publish(lifecycle())

        received = [event async for event in subscription]

        assert len(received) == 1
        assert subscription.closed is True
        assert channel.subscriber_count == 0
        with pytest.raises(SubscriptionClosed):
            await asyncio.wait_for(subscription.get(), timeout=0.1)

    @pytest.mark.asyncio
    async def test_listen_filters_event_types(self):
        """Test listeners only see the requested event types."""
        channel = EventChannel()
        seen = []

        async def handler(event):
            seen.append(event)

        task = channel.listen(handler, {EventType.POLL_ERROR})
        channel.publish(lifecycle())
        channel.publish(poll_error(1))
        channel.publish(poll_error(2))
        channel.close()
        await asyncio.wait_for(task, timeout=1)

        assert [e.consecutive_failures for e in seen] == [1, 2]

    @pytest.mark.asyncio
    async def test_listener_survives_handler_errors(self):
        """Test a failing handler does not stop the listener."""
        channel = EventChannel()
        seen = []

        async def handler(event):
            if event.consecutive_failures == 1:
                raise RuntimeError("handler bug")
            seen.append(event)

        task = channel.listen(handler)
        channel.publish(poll_error(1))
        channel.publish(poll_error(2))
        channel.close()
        await asyncio.wait_for(task, timeout=1)

        assert [e.consecutive_failures for e in seen] == [2]

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        """Test publishing with nobody listening is a no-op."""
        channel: EventChannel[BaseEvent] = EventChannel()
        channel.publish(QueueEmptyEvent())
        assert channel.published_count == 1
