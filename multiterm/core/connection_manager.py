"""
Connection Manager - Socket Lifecycle with Bounded Reconnection.

Complete implementation with:
- Per-session socket state machine driven through the registry
- Duplicate-connect suppression via the TTL-bound lock table
- Exponential backoff with jitter, bounded by max attempts
- Application-level heartbeat with stall detection
- Handshake/auth rejections that are never retried

Engineering Standards:
- Exponential backoff: Prevents thundering herd on backend restarts
- Jitter: ±25% randomization for load distribution
- Lock check-and-insert happens before the first await (atomic on one loop)
- Attempt generations: a socket that opens after its attempt was
  superseded (closed, torn down, reconnected) is closed immediately

State Transitions:
IDLE → CONNECTING → OPEN → CLOSED → CONNECTING (retry)
CLOSED → FAILED (retries exhausted)
CONNECTING → FAILED (handshake rejected)

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Set, Union

from .event_bus import EventBus
from .events import ConnectionErrorEvent, ErrorKind
from .heartbeat import HeartbeatMonitor
from .lock_table import LockTable
from .models import DisplaySize, SocketState
from .persistence import SessionPersistence
from .protocol import PingFrame, ResizeFrame, build_auth_frame, encode_frame
from .session_registry import SessionRecord, SessionRegistry
from .transport import (
    HandshakeRejectedError,
    SocketClosedError,
    SocketFactory,
    TerminalSocket,
    build_socket_url,
    open_websocket,
)
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = ["ConnectionManager", "ReconnectionPolicy", "TokenProvider"]

TokenProvider = Callable[[], Optional[str]]
MessageHandler = Callable[[str, Union[str, bytes]], None]


@dataclass
class ReconnectionPolicy:
    """
    Bounded exponential backoff configuration with jitter.

    Attributes:
        max_attempts: Retries allowed per streak before the record fails
        base_delay: Initial retry delay (default: 1s)
        max_delay: Maximum retry delay cap (default: 30s)
        jitter_factor: Randomization factor (default: ±25%)
        backoff_multiplier: Exponential growth rate (default: 2.0)
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_factor: float = 0.25
    backoff_multiplier: float = 2.0

    @classmethod
    def from_config(cls, config) -> ReconnectionPolicy:
        return cls(
            max_attempts=config.reconnect_max_attempts,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            jitter_factor=config.reconnect_jitter_factor,
            backoff_multiplier=config.reconnect_backoff_multiplier,
        )

    def next_delay(self, attempt: int) -> float:
        """
        Calculate next retry delay with exponential backoff + jitter.

        Formula:
        delay = min(base_delay * (multiplier ^ attempt), max_delay)
        jitter = delay * random.uniform(-jitter_factor, +jitter_factor)

        Args:
            attempt: Retry number within the streak (0-indexed)

        Returns:
            Delay in seconds before the retry

        Examples (defaults):
            attempt=0: ~1s (±250ms)
            attempt=2: ~4s (±1s)
            attempt=5: 30s (capped, ±7.5s)
        """
        delay = min(
            self.base_delay * (self.backoff_multiplier ** attempt),
            self.max_delay,
        )
        jitter = delay * random.uniform(-self.jitter_factor, self.jitter_factor)
        return max(0.0, delay + jitter)


class ConnectionManager:
    """
    Owns every socket, retry timer, heartbeat and reader task.

    Wiring:
    - Registers itself as the registry's teardown hook
    - Hands every inbound message to `on_message(key, message)`
      (the message pipeline's enqueue)
    - Receives pongs through `handle_pong(key, timestamp)`
    """

    __slots__ = (
        "registry",
        "bus",
        "persistence",
        "policy",
        "locks",
        "socket_factory",
        "token_provider",
        "connect_timeout",
        "heartbeat_interval",
        "heartbeat_missed_limit",
        "on_message",
        "_generations",
        "_retry_tasks",
        "_reader_tasks",
        "_heartbeats",
        "_streaks",
        "_background",
        "stats",
    )

    def __init__(
        self,
        registry: SessionRegistry,
        bus: EventBus,
        persistence: SessionPersistence,
        *,
        policy: Optional[ReconnectionPolicy] = None,
        locks: Optional[LockTable] = None,
        socket_factory: Optional[SocketFactory] = None,
        token_provider: Optional[TokenProvider] = None,
        connect_timeout: float = 5.0,
        heartbeat_interval: float = 15.0,
        heartbeat_missed_limit: int = 3,
    ):
        """
        Initialize connection manager.

        Args:
            registry: Session registry (single writer of record state)
            bus: Event bus for connection error notifications
            persistence: Source of the persisted endpoint settings
            policy: Backoff policy (default: 5 attempts, 1s..30s)
            locks: Duplicate-connect lock table (default: 5s TTL)
            socket_factory: Coroutine fn(url, timeout) -> TerminalSocket
            token_provider: Returns the current bearer token
            connect_timeout: Seconds allowed for the opening handshake
            heartbeat_interval: Seconds between pings
            heartbeat_missed_limit: Unanswered pings before force-close
        """
        self.registry = registry
        self.bus = bus
        self.persistence = persistence
        self.policy = policy or ReconnectionPolicy()
        self.locks = locks or LockTable()
        self.socket_factory: SocketFactory = socket_factory or open_websocket
        self.token_provider = token_provider or (lambda: None)
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_missed_limit = heartbeat_missed_limit
        self.on_message: Optional[MessageHandler] = None

        self._generations: Dict[str, object] = {}
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._reader_tasks: Dict[str, asyncio.Task] = {}
        self._heartbeats: Dict[str, HeartbeatMonitor] = {}
        self._streaks: Set[str] = set()
        self._background: Set[asyncio.Task] = set()

        self.stats = {
            "connect_attempts": 0,
            "connections_opened": 0,
            "connection_failures": 0,
            "handshake_rejections": 0,
            "duplicates_suppressed": 0,
            "retries_scheduled": 0,
            "retries_run": 0,
            "messages_sent": 0,
            "messages_received": 0,
        }

        registry.teardown = self.teardown

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(self, key: str) -> bool:
        """
        User-issued connect.

        Cancels any pending retry and gives a CLOSED or FAILED record a
        fresh retry budget before attempting to open.

        Returns:
            True when the socket is open
        """
        record = self.registry.get(key)
        if record is None:
            logger.warning(f"Ignoring connect for unknown session {key}")
            return False

        self._cancel_retry(key)
        if record.socket_state in (SocketState.CLOSED, SocketState.FAILED) and record.reconnect_attempts:
            self.registry.update(key, reconnect_attempts=0)
        self._streaks.discard(key)
        return await self._open(record)

    async def close(self, key: str) -> None:
        """Explicit disconnect. The record stays; nothing is retried."""
        record = self.registry.get(key)
        if record is None:
            logger.warning(f"Ignoring close for unknown session {key}")
            return

        handle = self._release(record)
        if handle is None and record.socket_state in (SocketState.IDLE, SocketState.CLOSED, SocketState.FAILED):
            return

        self.registry.update(key, socket_state=SocketState.CLOSING)
        if handle is not None:
            await self._close_socket(handle, key)
        if self.registry.is_current(record):
            self.registry.update(key, socket_state=SocketState.CLOSED, socket_handle=None)
        logger.info(f"Disconnected session {key}")

    def teardown(self, record: SessionRecord) -> None:
        """
        Registry hook run just before a record is removed.

        Synchronous: the socket close is scheduled on the running loop.
        """
        handle = self._release(record)
        if handle is not None:
            self._spawn(self._close_socket(handle, record.key))
        logger.debug(f"Tore down connection for {record.key}")

    async def resize(self, key: str, cols: int, rows: int) -> bool:
        """
        Send new terminal geometry when it changed and the socket is open.

        Returns:
            True if a resize frame was sent
        """
        record = self.registry.get(key)
        if record is None:
            return False
        size = DisplaySize(cols, rows)
        if record.display_size == size:
            return False
        if not await self._send(record, encode_frame(ResizeFrame(cols=cols, rows=rows))):
            return False
        self.registry.update(key, display_size=size)
        return True

    def handle_pong(self, key: str, timestamp: Optional[float]) -> None:
        monitor = self._heartbeats.get(key)
        if monitor is None:
            return
        rtt = monitor.handle_pong(timestamp)
        if rtt is not None:
            self.registry.update(key, measured_latency_ms=round(rtt, 1))
            metrics.observe_heartbeat_rtt(rtt / 1000.0)

    def has_pending_retry(self, key: str) -> bool:
        task = self._retry_tasks.get(key)
        return task is not None and not task.done()

    @property
    def pending_retry_count(self) -> int:
        return sum(1 for task in self._retry_tasks.values() if not task.done())

    def get_stats(self) -> dict:
        open_sockets = sum(
            1 for r in self.registry.records() if r.socket_state is SocketState.OPEN
        )
        return {
            **self.stats,
            "open_sockets": open_sockets,
            "pending_retries": self.pending_retry_count,
            "locks_held": len(self.locks),
        }

    async def send_raw(self, key: str, message: Union[str, bytes]) -> bool:
        """Send one already-encoded message on an open socket."""
        record = self.registry.get(key)
        if record is None:
            return False
        return await self._send(record, message)

    async def shutdown(self) -> None:
        """
        Close every socket and stop every task.

        Registry and persistence are left untouched so the next start can
        resume the same sessions.
        """
        handles = []
        for record in self.registry.records():
            handle = self._release(record)
            if handle is not None:
                handles.append((record.key, handle))
        for key, handle in handles:
            await self._close_socket(handle, key)

        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        self._background.clear()
        metrics.update_open_sockets(0)
        logger.info(f"Connection manager shut down ({len(handles)} sockets closed)")

    # ------------------------------------------------------------------
    # Open procedure
    # ------------------------------------------------------------------

    async def _open(self, record: SessionRecord) -> bool:
        key = record.key
        lock_key = record.lock_key

        # Nothing may await before the lock is held.
        if not self.locks.acquire(lock_key):
            self.stats["duplicates_suppressed"] += 1
            metrics.record_duplicate_suppressed()
            logger.debug(f"Connect for {key} suppressed, attempt already in flight")
            return False

        if record.socket_state is SocketState.OPEN and record.socket_handle is not None:
            self.locks.release(lock_key)
            return True

        generation = object()
        self._generations[key] = generation
        self.stats["connect_attempts"] += 1
        metrics.record_connect_attempt(record.descriptor.protocol)

        settings = self.persistence.load_settings()
        token = self.token_provider() or ""
        url = build_socket_url(settings, record.descriptor.protocol, record.remote_session_id, token)
        self.registry.update(key, socket_state=SocketState.CONNECTING)
        logger.info(
            f"Connecting {key} to {settings.backend_host}:{settings.backend_port} "
            f"(attempt {record.reconnect_attempts + 1})"
        )

        started = time.monotonic()
        try:
            socket = await self.socket_factory(url, self.connect_timeout)
        except HandshakeRejectedError as e:
            self.locks.release(lock_key)
            if self._is_live(record, generation):
                self._reject(record, str(e))
            return False
        except asyncio.CancelledError:
            self.locks.release(lock_key)
            raise
        except Exception as e:
            self.locks.release(lock_key)
            logger.warning(f"Connect failed for {key}: {e}")
            if self._is_live(record, generation):
                self._handle_drop(record, ErrorKind.TRANSIENT, f"Connect failed: {e}")
            return False

        if not self._is_live(record, generation):
            logger.info(f"Session {key} closed while connecting, discarding socket")
            self.locks.release(lock_key)
            await self._close_socket(socket, key)
            return False

        try:
            await socket.send(encode_frame(build_auth_frame(token, record.descriptor, record.remote_session_id)))
            if record.display_size is not None:
                size = record.display_size
                await socket.send(encode_frame(ResizeFrame(cols=size.cols, rows=size.rows)))
        except SocketClosedError as e:
            self.locks.release(lock_key)
            if self._is_live(record, generation):
                if e.auth_rejected:
                    self._reject(record, f"Closed by remote with code {e.code}")
                else:
                    self._handle_drop(record, ErrorKind.TRANSIENT, str(e))
            return False
        except Exception as e:
            self.locks.release(lock_key)
            await self._close_socket(socket, key)
            if self._is_live(record, generation):
                self._handle_drop(record, ErrorKind.TRANSIENT, f"Auth send failed: {e}")
            return False

        if not self._is_live(record, generation):
            self.locks.release(lock_key)
            await self._close_socket(socket, key)
            return False

        self.registry.update(
            key,
            socket_state=SocketState.OPEN,
            socket_handle=socket,
            reconnect_attempts=0,
            last_error=None,
            last_activity_at=time.time(),
        )
        self._streaks.discard(key)
        self.locks.release(lock_key)
        self.stats["connections_opened"] += 1
        metrics.record_connection_opened(record.descriptor.protocol, time.monotonic() - started)
        metrics.update_open_sockets(self._open_socket_count())

        self._start_heartbeat(record, socket)
        self._reader_tasks[key] = asyncio.create_task(
            self._read_loop(record, socket), name=f"reader_{key}"
        )
        logger.info(f"Session {key} connected")
        return True

    async def _read_loop(self, record: SessionRecord, socket: TerminalSocket) -> None:
        key = record.key
        try:
            while True:
                message = await socket.recv()
                self.stats["messages_received"] += 1
                metrics.record_message("inbound")
                if self.on_message is not None:
                    self.on_message(key, message)
        except asyncio.CancelledError:
            raise
        except SocketClosedError as e:
            if not self._owns(record, socket):
                return
            if e.auth_rejected:
                self._reject(record, f"Closed by remote with code {e.code}")
            else:
                logger.info(f"Socket for {key} closed (code={e.code})")
                self._handle_drop(record, ErrorKind.TRANSIENT, f"Connection closed (code {e.code})")
        except Exception as e:
            if not self._owns(record, socket):
                return
            logger.error(f"Reader failed for {key}: {e}", exc_info=True)
            self._handle_drop(record, ErrorKind.TRANSIENT, f"Connection error: {e}")

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    def _handle_drop(self, record: SessionRecord, kind: ErrorKind, message: str) -> None:
        """Socket lost or never opened: retry within budget, else FAILED."""
        key = record.key
        handle = self._release(record, keep_generation=True)
        if handle is not None:
            self._spawn(self._close_socket(handle, key))
        metrics.update_open_sockets(self._open_socket_count(exclude=record))

        if not self.registry.is_current(record):
            return

        attempts = record.reconnect_attempts
        if attempts < self.policy.max_attempts:
            attempt = attempts + 1
            self.registry.update(
                key,
                socket_state=SocketState.CLOSED,
                socket_handle=None,
                reconnect_attempts=attempt,
                last_error=message,
            )
            if key not in self._streaks:
                self._streaks.add(key)
                self.bus.publish(ConnectionErrorEvent(
                    key=key, error_kind=kind, message=message, attempt=attempt,
                ))
            delay = self.policy.next_delay(attempts)
            self._retry_tasks[key] = asyncio.create_task(
                self._retry_after(record, delay), name=f"retry_{key}"
            )
            self.stats["retries_scheduled"] += 1
            metrics.record_retry_scheduled()
            logger.warning(
                f"Session {key} dropped ({message}), retry {attempt}/{self.policy.max_attempts} "
                f"in {delay:.2f}s"
            )
        else:
            self.registry.update(
                key,
                socket_state=SocketState.FAILED,
                socket_handle=None,
                last_error=message,
            )
            self._streaks.discard(key)
            self._generations.pop(key, None)
            self.stats["connection_failures"] += 1
            metrics.record_connection_failed("exhausted")
            self.bus.publish(ConnectionErrorEvent(
                key=key,
                error_kind=ErrorKind.EXHAUSTED,
                message=f"Reconnection failed after {attempts} attempts: {message}",
                attempt=attempts,
            ))
            logger.error(f"Session {key} failed after {attempts} reconnection attempts")

    def _reject(self, record: SessionRecord, message: str) -> None:
        """Credentials refused: FAILED at once, never retried."""
        key = record.key
        handle = self._release(record)
        if handle is not None:
            self._spawn(self._close_socket(handle, key))
        self._streaks.discard(key)
        self.stats["handshake_rejections"] += 1
        self.stats["connection_failures"] += 1
        metrics.record_connection_failed("handshake")
        if not self.registry.is_current(record):
            return
        self.registry.update(
            key,
            socket_state=SocketState.FAILED,
            socket_handle=None,
            last_error=message,
        )
        self.bus.publish(ConnectionErrorEvent(
            key=key,
            error_kind=ErrorKind.HANDSHAKE,
            message=message,
            attempt=record.reconnect_attempts,
        ))
        logger.error(f"Session {key} rejected by endpoint: {message}")

    async def _retry_after(self, record: SessionRecord, delay: float) -> None:
        key = record.key
        await asyncio.sleep(delay)
        if self._retry_tasks.get(key) is asyncio.current_task():
            del self._retry_tasks[key]
        if not self.registry.is_current(record) or record.socket_state is not SocketState.CLOSED:
            return
        self.stats["retries_run"] += 1
        await self._open(record)

    async def _on_stalled(self, record: SessionRecord, socket: TerminalSocket) -> None:
        if self._owns(record, socket):
            self._handle_drop(record, ErrorKind.STALLED, "Heartbeat timed out")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_heartbeat(self, record: SessionRecord, socket: TerminalSocket) -> None:
        async def send_ping(frame: PingFrame) -> bool:
            if not self._owns(record, socket):
                return False
            return await self._send(record, encode_frame(frame))

        async def on_stalled() -> None:
            await self._on_stalled(record, socket)

        monitor = HeartbeatMonitor(
            record.key,
            send_ping,
            on_stalled,
            interval=self.heartbeat_interval,
            missed_limit=self.heartbeat_missed_limit,
        )
        self._heartbeats[record.key] = monitor
        monitor.start()

    def _release(self, record: SessionRecord, keep_generation: bool = False):
        """
        Stop every task tied to `record` and return its socket handle.

        Does not close the socket or touch the registry.
        """
        key = record.key
        if not keep_generation:
            self._generations.pop(key, None)
            self._cancel_retry(key)
            self._streaks.discard(key)

        monitor = self._heartbeats.pop(key, None)
        if monitor is not None:
            monitor.stop()

        reader = self._reader_tasks.pop(key, None)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()

        self.locks.release(record.lock_key)
        return record.socket_handle

    def _cancel_retry(self, key: str) -> None:
        task = self._retry_tasks.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _is_live(self, record: SessionRecord, generation: object) -> bool:
        return self.registry.is_current(record) and self._generations.get(record.key) is generation

    def _owns(self, record: SessionRecord, socket: TerminalSocket) -> bool:
        return self.registry.is_current(record) and record.socket_handle is socket

    async def _send(self, record: SessionRecord, message: Union[str, bytes]) -> bool:
        handle = record.socket_handle
        if handle is None or record.socket_state is not SocketState.OPEN:
            return False
        try:
            await handle.send(message)
        except Exception as e:
            logger.warning(f"Send failed for {record.key}: {e}")
            return False
        self.stats["messages_sent"] += 1
        metrics.record_message("outbound")
        return True

    async def _close_socket(self, socket: TerminalSocket, key: str) -> None:
        try:
            await socket.close()
        except Exception as e:
            logger.debug(f"Error closing socket for {key}: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.debug("No running event loop, socket close skipped")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _open_socket_count(self, exclude: Optional[SessionRecord] = None) -> int:
        return sum(
            1 for r in self.registry.records()
            if r is not exclude and r.socket_state is SocketState.OPEN
        )
