"""Unit tests for event streaming."""

import asyncio
import json
from datetime import datetime

import pytest

from conftest import rid
from events import ActionEvent, EventBus, EventSubscription, EventType
from models import ActionKind, ChangeAction


def make_event(event_type=EventType.STARTED, resource_id="network.main", message=""):
    return ActionEvent(
        event_type=event_type,
        resource_id=resource_id,
        action="create",
        message=message,
        attempt=0,
        timestamp="2024-01-15T10:30:00+00:00",
    )


# ==================== ActionEvent tests ====================


class TestActionEvent:
    """Tests for the ActionEvent dataclass."""

    def test_to_json(self):
        event = make_event(EventType.FAILED, message="quota exceeded")
        parsed = json.loads(event.to_json())
        assert parsed == {
            "event_type": "FAILED",
            "resource_id": "network.main",
            "action": "create",
            "message": "quota exceeded",
            "attempt": 0,
            "timestamp": "2024-01-15T10:30:00+00:00",
        }

    def test_describe(self):
        assert make_event().describe() == "network.main: create started"
        assert (
            make_event(EventType.RETRYING, message="throttled").describe()
            == "network.main: create retrying (throttled)"
        )

    def test_from_action_uses_label(self):
        action = ChangeAction(id=rid("network.main"), kind=ActionKind.DESTROY, replacement=True)
        event = ActionEvent.from_action(EventType.APPLIED, action, attempt=2)

        assert event.resource_id == "network.main"
        assert event.action == "replace (destroy)"
        assert event.attempt == 2
        # Parseable ISO 8601 timestamp
        datetime.fromisoformat(event.timestamp)


# ==================== EventSubscription tests ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_iteration_ends_after_close(self):
        sub = EventSubscription()
        event = make_event()

        assert sub.offer(event) is True
        sub.close()

        assert [e async for e in sub] == [event]
        assert sub.closed is True

    async def test_filter_fn_applied_before_queueing(self):
        sub = EventSubscription(queue_size=2, filter_fn=lambda e: e.event_type == EventType.FAILED)

        assert sub.offer(make_event(EventType.STARTED)) is False
        assert sub.offer(make_event(EventType.FAILED)) is True
        sub.close()

        assert [e.event_type async for e in sub] == [EventType.FAILED]
        assert sub.dropped == 0

    async def test_full_queue_counts_drops(self):
        sub = EventSubscription(queue_size=2)
        for _ in range(5):
            sub.offer(make_event())
        assert sub.dropped == 3

    async def test_offer_after_close_is_ignored(self):
        sub = EventSubscription()
        sub.close()
        sub.close()
        assert sub.offer(make_event()) is False
        assert [e async for e in sub] == []


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub system."""

    @pytest.fixture
    def bus(self):
        return EventBus(queue_size=16)

    async def test_publish_no_subscribers(self, bus):
        """Publishing with no subscribers does not raise."""
        await bus.publish(make_event())

    async def test_multiple_subscribers_all_receive(self, bus):
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()
        event = make_event()

        await bus.publish(event)

        assert await asyncio.wait_for(sub1.__anext__(), timeout=1.0) is event
        assert await asyncio.wait_for(sub2.__anext__(), timeout=1.0) is event

    async def test_unsubscribe_ends_iteration(self, bus):
        sid, sub = await bus.subscribe()
        await bus.publish(make_event())
        await bus.unsubscribe(sid)

        received = [e async for e in sub]

        assert len(received) == 1
        assert bus.subscriber_count() == 0

    async def test_full_queue_drops_event(self):
        bus = EventBus(queue_size=1)
        _, sub = await bus.subscribe()
        first = make_event(resource_id="network.a")

        await bus.publish(first)
        # Dropped without blocking the publisher
        await bus.publish(make_event(resource_id="network.b"))

        assert await asyncio.wait_for(sub.__anext__(), timeout=1.0) is first

    async def test_unsubscribe_with_full_queue_still_ends_iteration(self):
        bus = EventBus(queue_size=1)
        sid, sub = await bus.subscribe()
        await bus.publish(make_event())

        await bus.unsubscribe(sid)

        assert [e async for e in sub] == []

    async def test_unsubscribe_nonexistent_is_noop(self, bus):
        await bus.unsubscribe("nonexistent-id")
        assert bus.subscriber_count() == 0

    async def test_subscription_context_manager(self, bus):
        async with bus.subscription() as sub:
            assert bus.subscriber_count() == 1
            await bus.publish(make_event())
        assert bus.subscriber_count() == 0
        assert len([e async for e in sub]) == 1
