"""
Session core modules.

This package contains the components that keep many remote terminal
sessions alive: the session registry, connection manager with its
heartbeat and lock table, message pipeline, event bus, persistence and
start-up recovery.
"""

from .models import ConnectionDescriptor, DisplaySize, SocketState
from .events import ErrorKind, EventKind
from .event_bus import EventBus
from .lock_table import LockTable
from .persistence import (
    JsonFileStore,
    MemoryStore,
    RedisStore,
    SessionPersistence,
    StorageError,
)
from .session_registry import NO_SESSION, SessionRecord, SessionRegistry
from .connection_manager import ConnectionManager, ReconnectionPolicy
from .heartbeat import HeartbeatMonitor
from .message_pipeline import MessagePipeline
from .recovery import SessionRecovery
from .transport import HandshakeRejectedError, open_websocket

__all__ = [
    "ConnectionDescriptor",
    "DisplaySize",
    "SocketState",
    "ErrorKind",
    "EventKind",
    "EventBus",
    "LockTable",
    "JsonFileStore",
    "MemoryStore",
    "RedisStore",
    "SessionPersistence",
    "StorageError",
    "NO_SESSION",
    "SessionRecord",
    "SessionRegistry",
    "ConnectionManager",
    "ReconnectionPolicy",
    "HeartbeatMonitor",
    "MessagePipeline",
    "SessionRecovery",
    "HandshakeRejectedError",
    "open_websocket",
]
