"""
Message Pipeline - Ordered Inbound Delivery and Outbound Encoding.

Inbound:
- Every socket message is appended to its record's inbound queue
- One drain task per session pops messages strictly in arrival order
- Control frames (ping, pong, error, resize-ack, keepalive) are consumed
- Terminal data is published as INBOUND_DATA on the event bus

Outbound:
- Line-oriented protocols (ssh, telnet) take raw text, lone CR → CRLF
- Everything else takes {"type": "data"} frames, bytes base64-encoded

Engineering Standards:
- Nothing inbound is dropped while its record is current
- A drain loop that outlives its record stops at the next message
- Sends never raise; a missing or closed socket reports False

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import time
from typing import Dict, Union

from pydantic import BaseModel

from .connection_manager import ConnectionManager
from .event_bus import EventBus
from .events import ConnectionErrorEvent, ErrorKind, InboundData
from .models import SocketState
from .protocol import (
    DataFrame,
    ErrorFrame,
    InboundFrame,
    KeepaliveFrame,
    PingFrame,
    PongFrame,
    RawFrame,
    ResizeAckFrame,
    classify,
    encode_frame,
)
from .session_registry import SessionRecord, SessionRegistry

logger = logging.getLogger(__name__)

__all__ = ["MessagePipeline"]

_LONE_CR = re.compile(r"\r(?!\n)")

# last_activity_at is written at most this often (seconds) per session.
ACTIVITY_RESOLUTION = 1.0


class MessagePipeline:
    """
    Per-session FIFO between sockets and the event bus.

    Registers itself as the connection manager's inbound message handler.
    """

    __slots__ = ("registry", "bus", "manager", "drain_yield", "_drain_tasks", "stats")

    def __init__(
        self,
        registry: SessionRegistry,
        bus: EventBus,
        manager: ConnectionManager,
        drain_yield: float = 0.0,
    ):
        """
        Args:
            registry: Session registry
            bus: Event bus receiving INBOUND_DATA
            manager: Connection manager (socket sends, pong handling)
            drain_yield: Seconds slept between queued messages (0 = plain yield)
        """
        self.registry = registry
        self.bus = bus
        self.manager = manager
        self.drain_yield = drain_yield
        self._drain_tasks: Dict[str, asyncio.Task] = {}
        self.stats = {
            "messages_enqueued": 0,
            "messages_delivered": 0,
            "control_frames": 0,
            "remote_errors": 0,
            "dropped_unknown_session": 0,
            "stale_drains": 0,
        }
        manager.on_message = self.enqueue

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def enqueue(self, key: str, message: Union[str, bytes]) -> None:
        record = self.registry.get(key)
        if record is None:
            self.stats["dropped_unknown_session"] += 1
            logger.debug(f"Dropping message for unknown session {key}")
            return

        record.inbound_queue.append(message)
        self.stats["messages_enqueued"] += 1

        task = self._drain_tasks.get(key)
        if task is None or task.done():
            self._drain_tasks[key] = asyncio.create_task(self._drain(record), name=f"drain_{key}")

    def pending(self, key: str) -> int:
        record = self.registry.get(key)
        return len(record.inbound_queue) if record is not None else 0

    async def _drain(self, record: SessionRecord) -> None:
        key = record.key
        try:
            while record.inbound_queue:
                if not self.registry.is_current(record):
                    self.stats["stale_drains"] += 1
                    record.inbound_queue.clear()
                    return
                message = record.inbound_queue.popleft()
                self._touch(record)
                for frame in classify(message):
                    await self._handle(record, frame)
                if record.inbound_queue:
                    await asyncio.sleep(self.drain_yield)
        finally:
            if self._drain_tasks.get(key) is asyncio.current_task():
                del self._drain_tasks[key]

    async def _handle(self, record: SessionRecord, frame: InboundFrame) -> None:
        key = record.key

        if isinstance(frame, DataFrame):
            try:
                payload = frame.payload()
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Undecodable data frame for {key}, forwarding as text: {e}")
                payload = frame.data
            self._deliver(key, payload)

        elif isinstance(frame, RawFrame):
            self._deliver(key, frame.payload)

        elif isinstance(frame, PingFrame):
            self.stats["control_frames"] += 1
            await self.manager.send_raw(key, encode_frame(PongFrame(timestamp=frame.timestamp)))

        elif isinstance(frame, PongFrame):
            self.stats["control_frames"] += 1
            self.manager.handle_pong(key, frame.timestamp)

        elif isinstance(frame, ErrorFrame):
            self.stats["remote_errors"] += 1
            message = frame.error or frame.message or "Remote error"
            logger.warning(f"Remote error on {key}: {message}")
            self.registry.update(key, last_error=message)
            self.bus.publish(ConnectionErrorEvent(
                key=key,
                error_kind=ErrorKind.REMOTE,
                message=message,
                attempt=record.reconnect_attempts,
            ))

        elif isinstance(frame, ResizeAckFrame):
            self.stats["control_frames"] += 1
            logger.debug(f"Resize acknowledged for {key}: {frame.cols}x{frame.rows}")

        elif isinstance(frame, KeepaliveFrame):
            self.stats["control_frames"] += 1

    def _deliver(self, key: str, payload: Union[str, bytes]) -> None:
        self.stats["messages_delivered"] += 1
        self.bus.publish(InboundData(key=key, payload=payload))

    def _touch(self, record: SessionRecord) -> None:
        now = time.time()
        if record.last_activity_at is None or now - record.last_activity_at >= ACTIVITY_RESOLUTION:
            self.registry.update(record.key, last_activity_at=now)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, key: str, data: Union[str, bytes]) -> bool:
        """
        Send user input to a session.

        Returns:
            False when the session is unknown, not open, or the send failed
        """
        record = self.registry.get(key)
        if record is None or record.socket_handle is None or record.socket_state is not SocketState.OPEN:
            return False

        if record.descriptor.line_oriented:
            text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
            message = _LONE_CR.sub("\r\n", text)
        elif isinstance(data, bytes):
            message = encode_frame(DataFrame(
                data=base64.b64encode(data).decode("ascii"),
                encoding="base64",
            ))
        else:
            message = encode_frame(DataFrame(data=data))

        sent = await self.manager.send_raw(key, message)
        if sent:
            self._touch(record)
        return sent

    async def send_frame(self, key: str, frame: Union[BaseModel, dict]) -> bool:
        """Send a control frame as-is."""
        return await self.manager.send_raw(key, encode_frame(frame))

    async def stop(self) -> None:
        """Cancel every drain task. Queued messages stay on their records."""
        tasks = list(self._drain_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._drain_tasks.clear()
