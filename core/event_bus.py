"""In-process async publish/subscribe event bus."""

from __future__ import annotations

import asyncio
from collections import defaultdict

# Subscribing to this key receives every event regardless of its key
ALL = "*"


class EventBus:
    """Lightweight pub/sub backed by asyncio.Queue.

    Keys are task IDs.  Multiple subscribers may register for the same key;
    each receives its own copy of every event.  Publishing never waits on a
    subscriber.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, key: str = ALL) -> asyncio.Queue:
        """Return a queue that will receive all future events for *key*."""
        q: asyncio.Queue = asyncio.Queue()
        self._queues[key].append(q)
        return q

    def unsubscribe(self, key: str, q: asyncio.Queue) -> None:
        try:
            self._queues[key].remove(q)
        except ValueError:
            pass

    async def publish(self, key: str, event: dict) -> None:
        """Deliver *event* to subscribers of *key* and to wildcard subscribers."""
        targets = list(self._queues.get(key, []))
        if key != ALL:
            targets += self._queues.get(ALL, [])
        for q in targets:
            q.put_nowait(event)
