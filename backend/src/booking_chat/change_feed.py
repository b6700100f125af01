from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from threading import Lock
from typing import Protocol

from .errors import ChannelDisconnected
from .thread_store import MessageRecord

logger = logging.getLogger(__name__)


class _Disconnect:
    def __init__(self, reason: str) -> None:
        self.reason = reason


class FeedSubscription:
    """Receives canonical messages for one thread inside the subscriber's event loop."""

    def __init__(self, *, thread_id: str, loop: asyncio.AbstractEventLoop) -> None:
        self.thread_id = thread_id
        self._loop = loop
        self._queue: asyncio.Queue[MessageRecord | _Disconnect] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> MessageRecord:
        if self._closed and self._queue.empty():
            raise ChannelDisconnected(f"subscription closed for thread {self.thread_id}")
        item = await self._queue.get()
        if isinstance(item, _Disconnect):
            self._closed = True
            raise ChannelDisconnected(item.reason)
        return item

    def __aiter__(self) -> FeedSubscription:
        return self

    async def __anext__(self) -> MessageRecord:
        try:
            return await self.get()
        except ChannelDisconnected:
            raise StopAsyncIteration from None

    def _schedule(self, item: MessageRecord | _Disconnect) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

    def _close(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self._schedule(_Disconnect(reason))


class ChangeFeed(Protocol):
    def subscribe(self, thread_id: str) -> FeedSubscription: ...

    def unsubscribe(self, subscription: FeedSubscription) -> None: ...

    def publish(self, message: MessageRecord) -> int: ...


class InMemoryChangeFeed:
    """Process-local pub/sub keyed by thread id.

    Publishers may run on any thread; every subscriber is fed inside the event
    loop it subscribed from.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscribers: dict[str, list[FeedSubscription]] = defaultdict(list)
        self._available = True

    def subscribe(self, thread_id: str) -> FeedSubscription:
        if not self._available:
            raise ChannelDisconnected("change feed unavailable")
        subscription = FeedSubscription(thread_id=thread_id, loop=asyncio.get_running_loop())
        with self._lock:
            self._subscribers[thread_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: FeedSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.thread_id)
            if subscribers and subscription in subscribers:
                subscribers.remove(subscription)
                if not subscribers:
                    del self._subscribers[subscription.thread_id]
        subscription._closed = True

    def publish(self, message: MessageRecord) -> int:
        with self._lock:
            subscribers = list(self._subscribers.get(message.thread_id, ()))
        delivered = 0
        for subscription in subscribers:
            try:
                subscription._schedule(message)
            except RuntimeError:
                logger.warning("dropping subscriber on thread %s: event loop is closed", message.thread_id)
                self.unsubscribe(subscription)
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, thread_id: str | None = None) -> int:
        with self._lock:
            if thread_id is not None:
                return len(self._subscribers.get(thread_id, ()))
            return sum(len(values) for values in self._subscribers.values())

    def disconnect(self, thread_id: str | None = None, *, reason: str = "change feed dropped") -> int:
        """Drop live subscriptions; their readers get ``ChannelDisconnected``."""
        with self._lock:
            if thread_id is None:
                dropped = [sub for values in self._subscribers.values() for sub in values]
                self._subscribers.clear()
            else:
                dropped = self._subscribers.pop(thread_id, [])
        for subscription in dropped:
            try:
                subscription._close(reason)
            except RuntimeError:
                logger.debug("subscriber loop for thread %s already closed", subscription.thread_id)
        if dropped:
            logger.info("change feed dropped %d subscription(s): %s", len(dropped), reason)
        return len(dropped)

    def set_available(self, available: bool) -> None:
        self._available = available
