"""
Fan-out of the single outbound event channel to WebSocket subscribers.

Rules:
- The connection manager sees exactly one sink: EventBroadcaster.publish
- Each subscriber owns a bounded FIFO; a slow subscriber never blocks
  the manager or other subscribers
- On overflow the OLDEST queued event is dropped so subscribers stay live
- Events are JSON-ready dicts, enqueued in emission order
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from connection.events import OutboundEvent
from policy import BROADCAST_QUEUE_MAX


@dataclass
class Subscription:
    queue: asyncio.Queue[dict[str, Any]]
    dropped: int = 0


class EventBroadcaster:
    def __init__(self, *, max_queue: int = BROADCAST_QUEUE_MAX) -> None:
        if max_queue < 1:
            raise ValueError("max_queue must be >= 1")
        self._max_queue = max_queue
        self._subscribers: list[Subscription] = []
        self.published = 0

    def subscribe(self) -> Subscription:
        sub = Subscription(queue=asyncio.Queue(maxsize=self._max_queue))
        self._subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: OutboundEvent) -> None:
        """EventSink implementation."""
        message = event.to_dict()
        self.published += 1
        for sub in list(self._subscribers):
            if sub.queue.full():
                sub.queue.get_nowait()
                sub.dropped += 1
            sub.queue.put_nowait(message)
