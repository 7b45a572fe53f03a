"""Events published by the session core.

Each event is a small dataclass keyed by the session it concerns. The
display-surface integration layer subscribes to them; the core components
only publish.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Tuple, Union

from .models import RemoteId

__all__ = [
    "EventKind",
    "ErrorKind",
    "SessionEvent",
    "SessionAdded",
    "SessionActivated",
    "SessionUpdated",
    "SessionClosed",
    "DisplayReady",
    "InboundData",
    "ConnectionErrorEvent",
]


class EventKind(Enum):
    SESSION_ADDED = "session_added"
    SESSION_ACTIVATED = "session_activated"
    SESSION_UPDATED = "session_updated"
    SESSION_CLOSED = "session_closed"
    DISPLAY_READY = "display_ready"
    INBOUND_DATA = "inbound_data"
    CONNECTION_ERROR = "connection_error"


class ErrorKind(Enum):
    """Why a connection error was reported."""
    TRANSIENT = "transient"  # socket dropped, retry scheduled
    HANDSHAKE = "handshake"  # rejected by the endpoint, not retried
    EXHAUSTED = "exhausted"  # retries used up, record FAILED
    STALLED = "stalled"  # heartbeat went unanswered
    REMOTE = "remote"  # remote sent an error frame


@dataclass
class SessionEvent:
    """Base event; `key` is the session handle it concerns."""
    kind: ClassVar[EventKind]
    key: str = ""


@dataclass
class SessionAdded(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_ADDED
    remote_connection_id: Optional[RemoteId] = None
    remote_session_id: Optional[RemoteId] = None


@dataclass
class SessionActivated(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_ACTIVATED
    previous_key: Optional[str] = None


@dataclass
class SessionUpdated(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_UPDATED
    fields: Tuple[str, ...] = field(default_factory=tuple)


@dataclass
class SessionClosed(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.SESSION_CLOSED
    remote_connection_id: Optional[RemoteId] = None
    remote_session_id: Optional[RemoteId] = None


@dataclass
class DisplayReady(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.DISPLAY_READY


@dataclass
class InboundData(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.INBOUND_DATA
    payload: Union[str, bytes] = ""


@dataclass
class ConnectionErrorEvent(SessionEvent):
    kind: ClassVar[EventKind] = EventKind.CONNECTION_ERROR
    error_kind: ErrorKind = ErrorKind.TRANSIENT
    message: str = ""
    attempt: int = 0
