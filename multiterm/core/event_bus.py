"""
Event Bus - publish/subscribe between the session core and the display layer.

The display surface and the session core initialise independently: a
session can start receiving bytes before the widget that renders it has
mounted. The bus therefore holds INBOUND_DATA for a session until that
session's DISPLAY_READY is published, then delivers the held data in
arrival order right after it.

Delivery:
- Synchronous handlers run in subscription order inside publish()
- A failing handler is logged and does not stop the others
- Async consumers get their own bounded queue through consume()

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .events import DisplayReady, EventKind, InboundData, SessionClosed, SessionEvent

logger = logging.getLogger(__name__)

__all__ = ["EventBus", "EventHandler"]

EventHandler = Callable[[SessionEvent], None]


class EventBus:
    """Decoupled pub/sub channel with per-session hold-until-ready."""

    __slots__ = (
        "hold_until_ready",
        "max_queue",
        "_subscribers",
        "_consumers",
        "_ready",
        "_held",
        "_closed",
    )

    def __init__(self, hold_until_ready: bool = True, max_queue: int = 5000):
        """
        Args:
            hold_until_ready: Hold inbound data until the session's display is ready
            max_queue: Queue bound for each async consumer
        """
        self.hold_until_ready = hold_until_ready
        self.max_queue = max_queue
        self._subscribers: List[Tuple[Optional[EventKind], EventHandler]] = []
        self._consumers: List[asyncio.Queue] = []
        self._ready: Set[str] = set()
        self._held: Dict[str, Deque[InboundData]] = {}
        self._closed = False

    def subscribe(self, kind: Optional[EventKind], handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for one event kind, or for every kind when None.

        Returns:
            Callable that removes the subscription
        """
        entry = (kind, handler)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            try:
                self._subscribers.remove(entry)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        if self._closed:
            return

        if (
            isinstance(event, InboundData)
            and self.hold_until_ready
            and event.key not in self._ready
        ):
            self._held.setdefault(event.key, deque()).append(event)
            return

        self._dispatch(event)

        if isinstance(event, DisplayReady):
            # Anything published while flushing lands in the same deque,
            # so order is kept until the key is marked ready.
            held = self._held.get(event.key)
            while held:
                self._dispatch(held.popleft())
            self._held.pop(event.key, None)
            self._ready.add(event.key)
        elif isinstance(event, SessionClosed):
            self._ready.discard(event.key)
            self._held.pop(event.key, None)

    def _dispatch(self, event: SessionEvent) -> None:
        for kind, handler in list(self._subscribers):
            if kind is not None and kind is not event.kind:
                continue
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler failed for {event.kind.value}: {e}", exc_info=True)

        for queue in list(self._consumers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(
                    f"Event consumer queue full, dropping {event.kind.value} "
                    f"for {event.key} (queue size: {queue.qsize()})"
                )

    async def consume(self) -> AsyncIterator[SessionEvent]:
        """Yield every published event as it arrives. Stops on close()."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self._consumers.append(queue)
        try:
            while not self._closed or not queue.empty():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield event
        finally:
            if queue in self._consumers:
                self._consumers.remove(queue)

    def is_ready(self, key: str) -> bool:
        return key in self._ready

    def held_count(self, key: str) -> int:
        return len(self._held.get(key, ()))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        """Stop delivery permanently and release held data."""
        self._closed = True
        self._held.clear()
        self._ready.clear()
