"""
Multiterm - Multi-Session Remote Terminal Core.

Client-side session and connection management for many concurrent remote
terminals (SSH, Telnet, RDP, VNC) over websocket:
- Session registry with deduplication and active-session tracking
- Bounded reconnection with exponential backoff and jitter
- Application-level heartbeat with stall detection
- Ordered per-session message pipeline
- Snapshot persistence (memory, Redis, JSON file) and reload recovery
- Prometheus metrics
"""

__version__ = "1.0.0"
__author__ = "Backend Lead Developer"

from .config import MultitermConfig
from .core import (
    ConnectionDescriptor,
    ConnectionManager,
    EventBus,
    MessagePipeline,
    SessionRegistry,
    SocketState,
)
from .workspace import (
    NavigationTarget,
    SessionCreationError,
    TerminalWorkspace,
    open_workspace,
)

__all__ = [
    "MultitermConfig",
    "ConnectionDescriptor",
    "ConnectionManager",
    "EventBus",
    "MessagePipeline",
    "SessionRegistry",
    "SocketState",
    "NavigationTarget",
    "SessionCreationError",
    "TerminalWorkspace",
    "open_workspace",
]
