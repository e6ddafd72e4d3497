"""Event bus delivering core events to UI subscribers.

Each subscriber gets its own bounded asyncio.Queue. Publishing never blocks:
when a subscriber falls behind, its oldest queued event is dropped.
"""

import asyncio
import logging
from typing import List

from bump_bridge.constants import EVENT_QUEUE_SIZE
from bump_bridge.models.events import BridgeEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Fan-out of bridge events to any number of subscribers."""

    def __init__(self, queue_size: int = EVENT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: List["asyncio.Queue[BridgeEvent]"] = []

    def subscribe(self) -> "asyncio.Queue[BridgeEvent]":
        queue: "asyncio.Queue[BridgeEvent]" = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.append(queue)
        logger.debug(f"Event subscriber added ({len(self._subscribers)} total)")
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[BridgeEvent]") -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            return
        logger.debug(f"Event subscriber removed ({len(self._subscribers)} total)")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: BridgeEvent) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning(f"Event subscriber lagging, dropped oldest event before {event.type}")
            queue.put_nowait(event)
