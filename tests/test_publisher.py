"""Tests for server/publisher.py -- update fan-out and subscriber limits."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest
from server.publisher import TaskUpdateBus, TooManySubscribers
from conftest import drain


class TestTaskUpdateBus:
    def test_all_subscriber_sees_everything(self, bus):
        q = bus.subscribe()
        bus.publish(1, {"event": "task_created"})
        bus.publish(2, {"event": "task_completed"})
        assert [e["task_id"] for e in drain(q)] == [1, 2]

    def test_scoped_subscriber_filters(self, bus):
        q = bus.subscribe(task_id=2)
        bus.publish(1, {"event": "task_created"})
        bus.publish(2, {"event": "task_completed", "completed": True})
        assert drain(q) == [{"task_id": 2, "event": "task_completed", "completed": True}]

    def test_publish_returns_reach(self, bus):
        bus.subscribe()
        bus.subscribe(task_id=1)
        bus.subscribe(task_id=9)
        assert bus.publish(1, {}) == 2

    def test_no_subscribers(self, bus):
        assert bus.publish(1, {"event": "x"}) == 0

    def test_unsubscribe(self, bus):
        q = bus.subscribe()
        bus.unsubscribe(q)
        bus.publish(1, {})
        assert q.empty()
        assert bus.subscriber_count == 0
        bus.unsubscribe(q)  # idempotent

    def test_full_queue_dropped(self):
        bus = TaskUpdateBus(queue_size=2)
        slow = bus.subscribe()
        for i in range(3):
            bus.publish(i, {})
        assert bus.subscriber_count == 0
        assert len(drain(slow)) == 2

    def test_subscriber_limit(self):
        bus = TaskUpdateBus(max_subscribers=1)
        bus.subscribe()
        with pytest.raises(TooManySubscribers):
            bus.subscribe()
