"""
Publish/subscribe channel used for discovery, cache and connection-state events
Delivery is synchronous and FIFO per channel; subscribers unsubscribe through the returned handle
"""

import asyncio
import logging
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Subscription:
    """Handle returned by EventChannel.subscribe"""

    def __init__(self, channel: 'EventChannel', callback: Callable):
        self._channel = channel
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._channel._remove(self)


class QueueSubscription(Subscription):
    """Subscription that buffers events in an asyncio.Queue for async consumers"""

    def __init__(self, channel: 'EventChannel', maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        super().__init__(channel, self._enqueue)

    def _enqueue(self, event) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            # Slow consumer: drop the oldest event to keep the newest state
            self.queue.get_nowait()
            self.queue.put_nowait(event)

    async def get(self, timeout: Optional[float] = None):
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class EventChannel(Generic[T]):
    """
    Ordered publish/subscribe channel

    Events are delivered to subscribers in subscription order, and each subscriber
    sees events in the order they were published. A failing subscriber is logged and
    does not prevent delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._subscriptions: List[Subscription] = []
        self._closed = False

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        if self._closed:
            raise RuntimeError(f"Event channel '{self.name}' is closed")
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def subscribe_queue(self, maxsize: int = 0) -> QueueSubscription:
        if self._closed:
            raise RuntimeError(f"Event channel '{self.name}' is closed")
        subscription = QueueSubscription(self, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: T) -> None:
        if self._closed:
            return
        # Snapshot so subscribers may unsubscribe during delivery
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.callback(event)
            except Exception as e:
                logger.error(f"[{self.name}] Subscriber error: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.active = False
        self._subscriptions.clear()
        self._closed = True

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass
