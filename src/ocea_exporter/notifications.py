"""Fan-out of counter updates to the sinks.

Each subscriber owns a single-slot mailbox. Publishing never waits: when a
subscriber has not consumed the previous notification yet, the new one is
dropped for that subscriber.
"""

import asyncio
import logging
from typing import Dict, List

from .models import Notification

logger = logging.getLogger(__name__)


class Subscription:
    """Mailbox of one subscriber."""

    def __init__(self, name: str):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def get(self) -> Notification:
        """Wait for the next notification."""
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, notification: Notification) -> bool:
        """Deliver without waiting. Returns False if the mailbox was full."""
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            return False
        return True


class NotificationHub:
    """Publish/subscribe hub between the fetcher and its listeners."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    @property
    def subscribers(self) -> List[str]:
        return list(self._subscriptions)

    def subscribe(self, name: str) -> Subscription:
        """Register a listener under a unique name."""
        if name in self._subscriptions:
            raise ValueError(f"subscriber already registered: {name}")
        subscription = Subscription(name)
        self._subscriptions[name] = subscription
        return subscription

    def unsubscribe(self, name: str):
        self._subscriptions.pop(name, None)

    def publish(self, notification: Notification) -> int:
        """Offer a notification to every subscriber.

        Returns:
            Number of subscribers that received it
        """
        delivered = 0
        for subscription in self._subscriptions.values():
            if subscription.offer(notification):
                delivered += 1
            else:
                logger.warning(f"Subscriber {subscription.name} is busy, notification dropped")
        return delivered
