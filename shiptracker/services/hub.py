"""
In-memory subscriber fanout.

- Each subscriber gets a bounded queue and a pump task that writes to its socket.
- broadcast() serialises once and enqueues to every live subscriber; it never awaits.
- A subscriber whose send fails (or whose queue overflows) is removed without
  affecting delivery to the others.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger("ais.hub")

SendFunc = Callable[[str], Awaitable[Any]]

_ids = itertools.count(1)


class Subscriber:
    """One downstream connection. Only BroadcastHub writes to it."""

    def __init__(self, send: SendFunc, queue_maxsize: int = 1000):
        self.id = next(_ids)
        self.alive = True
        self._send = send
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_maxsize)
        self._pump: Optional[asyncio.Task[None]] = None

    def offer(self, payload: str) -> bool:
        if not self.alive:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            return False
        return True

    def __repr__(self) -> str:
        return f"<Subscriber {self.id} alive={self.alive}>"


class SubscriberRegistry:
    """Live subscriber set. Fires on_first on 0 -> 1 and on_empty on 1 -> 0."""

    def __init__(
        self,
        on_first: Optional[Callable[[], None]] = None,
        on_empty: Optional[Callable[[], None]] = None,
    ):
        self._live: Set[Subscriber] = set()
        self._on_first = on_first
        self._on_empty = on_empty

    def register(self, sub: Subscriber) -> bool:
        if sub in self._live or not sub.alive:
            return False
        self._live.add(sub)
        logger.info("Client connected. Total clients: %d", len(self._live))
        if len(self._live) == 1 and self._on_first is not None:
            self._on_first()
        return True

    def unregister(self, sub: Subscriber) -> bool:
        sub.alive = False
        if sub not in self._live:
            return False
        self._live.discard(sub)
        logger.info("Client disconnected. Total clients: %d", len(self._live))
        if not self._live and self._on_empty is not None:
            self._on_empty()
        return True

    def snapshot(self) -> list[Subscriber]:
        return list(self._live)

    @property
    def count(self) -> int:
        return len(self._live)

    def __len__(self) -> int:
        return len(self._live)


class BroadcastHub:
    """In-process fanout: broadcast(message) sends to all registered subscribers."""

    def __init__(self, registry: SubscriberRegistry, queue_maxsize: int = 1000):
        self._registry = registry
        self._queue_maxsize = queue_maxsize
        self._dropped = 0

    def attach(self, send: SendFunc, greeting: Optional[dict[str, Any]] = None) -> Subscriber:
        """Create a subscriber; the greeting is queued ahead of any broadcast."""
        sub = Subscriber(send, queue_maxsize=self._queue_maxsize)
        if greeting is not None:
            sub.offer(json.dumps(greeting, default=str))
        sub._pump = asyncio.create_task(self._pump(sub), name=f"ws-pump-{sub.id}")
        self._registry.register(sub)
        return sub

    def detach(self, sub: Subscriber) -> bool:
        removed = self._registry.unregister(sub)
        pump = sub._pump
        if pump is not None and pump is not asyncio.current_task() and not pump.done():
            pump.cancel()
        return removed

    def broadcast(self, message: dict[str, Any]) -> int:
        """Send message to all live subscribers. Returns how many accepted it."""
        subscribers = self._registry.snapshot()
        if not subscribers:
            return 0
        payload = json.dumps(message, default=str)
        delivered = 0
        for sub in subscribers:
            if sub.offer(payload):
                delivered += 1
            else:
                self._dropped += 1
                logger.warning("Subscriber %d queue full; disconnecting", sub.id)
                self.detach(sub)
        return delivered

    async def _pump(self, sub: Subscriber) -> None:
        queue = sub._queue
        try:
            while True:
                payload = await queue.get()
                try:
                    await sub._send(payload)
                except Exception as exc:
                    self._dropped += 1
                    logger.info("Client WebSocket error (subscriber %d): %s", sub.id, exc)
                    self.detach(sub)
                    return
                finally:
                    queue.task_done()
        finally:
            # nothing else will be sent on this socket
            while True:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every live subscriber's queue has been written out."""
        await asyncio.gather(*(sub._queue.join() for sub in self._registry.snapshot()))

    async def close(self) -> None:
        pumps = []
        for sub in self._registry.snapshot():
            self.detach(sub)
            if sub._pump is not None:
                pumps.append(sub._pump)
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def subscriber_count(self) -> int:
        return self._registry.count
