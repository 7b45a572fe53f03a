"""
Shared value types for the session core.

These types cross component boundaries (registry, persistence, connection
manager, catalog client), so they live apart from any one component.

Author: Backend Lead Developer
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "ConnectionDescriptor",
    "DisplaySize",
    "SocketState",
    "RemoteId",
    "LINE_ORIENTED_PROTOCOLS",
]

# Backend identifiers are integers in practice but arrive as strings from
# URLs and persisted JSON; both are accepted.
RemoteId = Union[int, str]

LINE_ORIENTED_PROTOCOLS = frozenset({"ssh", "telnet"})


class SocketState(Enum):
    """
    Per-session socket state machine.

    State Transitions:
    IDLE → CONNECTING → OPEN
    OPEN → CLOSED → CONNECTING (retry allowed)
    CLOSED → FAILED (retries exhausted or handshake rejected)
    any → CLOSING → CLOSED (explicit close)
    """
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class ConnectionDescriptor(BaseModel):
    """
    Snapshot of a saved remote connection, resolved once by the catalog.

    Attributes:
        protocol: Remote protocol (ssh, telnet, rdp, vnc)
        host: Remote host name or address
        port: Remote port
        name: Display name of the saved connection
        username: Login name, if the catalog exposes one
        credentials_ref: Opaque reference the backend uses to find credentials
    """
    model_config = ConfigDict(frozen=True)

    protocol: str = Field(min_length=1)
    host: str
    port: int = Field(ge=0, le=65535)
    name: str = ""
    username: Optional[str] = None
    credentials_ref: Optional[str] = None

    @property
    def line_oriented(self) -> bool:
        """True for shell protocols that take raw text on the wire."""
        return self.protocol.lower() in LINE_ORIENTED_PROTOCOLS


@dataclass(frozen=True)
class DisplaySize:
    """Terminal geometry in character cells."""
    cols: int
    rows: int
