from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass


ALERT_CREATED = "alert.created"
ALERT_UPDATED = "alert.updated"
SCRAPE_COMPLETED = "scrape.completed"


@dataclass(frozen=True)
class Event:
    type: str
    data: dict

    def encode(self) -> str:
        data = json.dumps(self.data, separators=(",", ":"), ensure_ascii=False, default=str)
        return f"event: {self.type}\ndata: {data}\n\n"


class EventBus:
    """In-process fan-out; slow subscribers lose their oldest events."""

    def __init__(self, max_queue: int = 200) -> None:
        self._lock = asyncio.Lock()
        self._max_queue = max_queue
        self._subscribers: set[asyncio.Queue[Event]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @asynccontextmanager
    async def subscription(self) -> AsyncIterator[asyncio.Queue[Event]]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=self._max_queue)
        async with self._lock:
            self._subscribers.add(queue)
        try:
            yield queue
        finally:
            async with self._lock:
                self._subscribers.discard(queue)

    async def publish(self, event: Event) -> None:
        async with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(event)
