"""
Heartbeat Monitor - Application-Level Liveness for Open Sockets.

## Protocol:
- Every `interval` seconds send {"type": "ping", "timestamp": <epoch ms>}
- The remote answers {"type": "pong", "timestamp": <same value>}
- RTT = now - timestamp, recorded as the session's measured latency

## Failure Detection:
- A ping still unanswered when the next interval elapses is a miss
- `missed_limit` consecutive misses (default 3) fire `on_stalled`,
  which force-closes the socket and enters the reconnection path

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .protocol import PingFrame

logger = logging.getLogger(__name__)

__all__ = ["HeartbeatMonitor", "HeartbeatMetrics"]


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class HeartbeatMetrics:
    """
    Liveness counters for one socket.

    Attributes:
        rtt_ms: Last measured round trip in milliseconds
        consecutive_misses: Intervals that ended with the ping unanswered
        pings_sent: Total pings sent
        pongs_received: Total pongs received
    """
    rtt_ms: Optional[float] = None
    consecutive_misses: int = 0
    pings_sent: int = 0
    pongs_received: int = 0


class HeartbeatMonitor:
    """
    Ping loop for one session's socket.

    `send` delivers a frame and returns False when the socket is gone;
    `on_stalled` is awaited once when the miss limit is reached.
    """

    __slots__ = (
        "key",
        "send",
        "on_stalled",
        "interval",
        "missed_limit",
        "metrics",
        "_clock",
        "_pending_timestamp",
        "_task",
    )

    def __init__(
        self,
        key: str,
        send: Callable[[PingFrame], Awaitable[bool]],
        on_stalled: Optional[Callable[[], Awaitable[None]]] = None,
        interval: float = 15.0,
        missed_limit: int = 3,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            key: Session key, for logging
            send: Coroutine fn(frame) -> bool delivering a ping
            on_stalled: Coroutine fn() awaited when pongs stop arriving
            interval: Seconds between pings (default: 15s)
            missed_limit: Misses tolerated before on_stalled fires (default: 3)
            clock: Epoch-milliseconds source, injectable for tests
        """
        self.key = key
        self.send = send
        self.on_stalled = on_stalled
        self.interval = interval
        self.missed_limit = missed_limit
        self.metrics = HeartbeatMetrics()
        self._clock = clock or _now_ms
        self._pending_timestamp: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._ping_loop(), name=f"heartbeat_{self.key}")
        logger.debug(f"Started heartbeat for {self.key} (interval={self.interval}s)")

    def stop(self) -> None:
        """Cancel the ping loop. Safe to call from inside on_stalled."""
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._pending_timestamp = None

    def handle_pong(self, timestamp: Optional[float]) -> Optional[float]:
        """
        Record a pong answering the outstanding ping.

        A pong echoing any other timestamp is stale and ignored. A pong
        without a timestamp cannot be matched and is taken as the answer.

        Returns:
            Round trip in milliseconds, or None when the pong is stale or
            carries no timestamp
        """
        pending = self._pending_timestamp
        if timestamp is not None and (pending is None or float(timestamp) != pending):
            logger.debug(f"Ignoring stale pong for {self.key}")
            return None

        self.metrics.pongs_received += 1
        self.metrics.consecutive_misses = 0
        self._pending_timestamp = None
        if timestamp is None:
            return None
        rtt = max(0.0, self._clock() - float(timestamp))
        self.metrics.rtt_ms = rtt
        return rtt

    async def _ping_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)

                if self._pending_timestamp is not None:
                    self.metrics.consecutive_misses += 1
                    logger.warning(
                        f"Heartbeat miss #{self.metrics.consecutive_misses} for {self.key}"
                    )
                    if self.metrics.consecutive_misses >= self.missed_limit:
                        logger.error(
                            f"Heartbeat stalled for {self.key}: "
                            f"{self.metrics.consecutive_misses} pings unanswered"
                        )
                        self._task = None
                        if self.on_stalled is not None:
                            await self.on_stalled()
                        return

                timestamp = self._clock()
                self._pending_timestamp = timestamp
                self.metrics.pings_sent += 1
                if not await self.send(PingFrame(timestamp=timestamp)):
                    logger.debug(f"Heartbeat ping for {self.key} not sent, socket gone")
                    return
        except asyncio.CancelledError:
            logger.debug(f"Heartbeat cancelled for {self.key}")
            raise
