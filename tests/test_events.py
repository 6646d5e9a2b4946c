"""Tests for the publish/subscribe event channel."""

import pytest

from events import EventChannel


class TestEventChannel:
    """Ordering, unsubscription and failure isolation."""

    def test_fifo_delivery_in_subscription_order(self):
        channel = EventChannel("test")
        received = []
        channel.subscribe(lambda event: received.append(("a", event)))
        channel.subscribe(lambda event: received.append(("b", event)))

        channel.publish(1)
        channel.publish(2)

        assert received == [("a", 1), ("b", 1), ("a", 2), ("b", 2)]

    def test_unsubscribe_stops_delivery(self):
        channel = EventChannel("test")
        received = []
        subscription = channel.subscribe(received.append)

        channel.publish(1)
        subscription.unsubscribe()
        subscription.unsubscribe()
        channel.publish(2)

        assert received == [1]
        assert channel.subscriber_count == 0

    def test_unsubscribe_during_delivery(self):
        channel = EventChannel("test")
        received = []
        holder = {}

        def once(event):
            received.append(event)
            holder["sub"].unsubscribe()

        holder["sub"] = channel.subscribe(once)
        channel.subscribe(lambda event: received.append(f"other:{event}"))

        channel.publish(1)
        channel.publish(2)

        assert received == [1, "other:1", "other:2"]

    def test_failing_subscriber_does_not_block_others(self):
        channel = EventChannel("test")
        received = []

        def broken(event):
            raise RuntimeError("boom")

        channel.subscribe(broken)
        channel.subscribe(received.append)

        channel.publish("event")

        assert received == ["event"]

    def test_closed_channel(self):
        channel = EventChannel("test")
        received = []
        channel.subscribe(received.append)
        channel.close()

        channel.publish(1)

        assert received == []
        with pytest.raises(RuntimeError):
            channel.subscribe(received.append)


class TestQueueSubscription:
    """Async consumers."""

    @pytest.mark.asyncio
    async def test_queue_receives_in_order(self):
        channel = EventChannel("test")
        subscription = channel.subscribe_queue()

        channel.publish("a")
        channel.publish("b")

        assert await subscription.get(timeout=1) == "a"
        assert await subscription.get(timeout=1) == "b"

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        channel = EventChannel("test")
        subscription = channel.subscribe_queue(maxsize=2)

        for value in (1, 2, 3):
            channel.publish(value)

        assert await subscription.get(timeout=1) == 2
        assert await subscription.get(timeout=1) == 3
