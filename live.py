"""
Live updates for SkillSwap.

A small in-process publish/subscribe broker. Writers call ``publish`` after a
document change; readers (WebSocket handlers) hold a ``Subscription`` for a
topic and drain it until they call ``unsubscribe``. Topics used:

- ``chat:<chat_id>``       new chat messages
- ``requests:<uid>``       request created/updated/deleted for that user

Publishing is safe from worker threads: each subscription remembers the
event loop it was created on and events are handed over with
``call_soon_threadsafe``.
"""

import asyncio
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from logging_config import get_logger

logger = get_logger(__name__)


class Subscription:
    def __init__(self, broker: "Broker", topic: str, loop: asyncio.AbstractEventLoop):
        self.broker = broker
        self.topic = topic
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.active = True

    def _deliver(self, event: Dict[str, Any]) -> None:
        if not self.active:
            return
        if self._loop.is_closed():
            self.unsubscribe()
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)
        except RuntimeError:
            # loop closed after the check above
            self.unsubscribe()

    async def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def unsubscribe(self) -> None:
        """Stop delivery. Events already queued are dropped with the queue."""
        if self.active:
            self.active = False
            self.broker._remove(self)


class Broker:
    def __init__(self):
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> Subscription:
        """Must be called from inside a running event loop."""
        sub = Subscription(self, topic, asyncio.get_running_loop())
        with self._lock:
            self._subscribers[topic].add(sub)
        logger.debug("Subscribed to %s", topic)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.topic)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.topic]
        logger.debug("Unsubscribed from %s", sub.topic)

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, event: Dict[str, Any]) -> int:
        """Deliver ``event`` to every live subscriber of ``topic``. Returns the fan-out."""
        with self._lock:
            subs = list(self._subscribers.get(topic, ()))
        for sub in subs:
            sub._deliver(event)
        return len(subs)


broker = Broker()


def get_broker() -> Broker:
    return broker


async def stream_to_websocket(websocket: WebSocket, sub: Subscription,
                              skip: Optional[Callable[[Dict[str, Any]], bool]] = None) -> None:
    """Forward events from ``sub`` to an accepted WebSocket until the client leaves.

    Events for which ``skip(event)`` is true are dropped, e.g. ones already
    included in a snapshot sent before streaming started.

    Incoming frames are read and discarded so a disconnect is noticed even
    when no events arrive. The subscription is always released on exit.
    """

    async def forward():
        while True:
            event = await sub.get()
            if skip is not None and skip(event):
                continue
            await websocket.send_json(jsonable_encoder(event))

    async def drain():
        while True:
            await websocket.receive_text()

    tasks = [asyncio.ensure_future(forward()), asyncio.ensure_future(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    finally:
        for task in tasks:
            task.cancel()
        sub.unsubscribe()
