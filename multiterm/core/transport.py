"""
Socket transport for remote terminal sessions.

The connection manager talks to sockets through the small TerminalSocket
protocol so tests can inject in-memory fakes. The production factory wraps
the `websockets` asyncio client.

Close codes that mean "credentials refused" (1008 policy violation, 4001
unauthorized, 4003 forbidden) and HTTP 401/403 handshake responses are
surfaced distinctly so they are never retried.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, Protocol, Union
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, InvalidStatus

from .models import RemoteId
from .persistence import EndpointSettings

logger = logging.getLogger(__name__)

__all__ = [
    "TerminalSocket",
    "SocketFactory",
    "SocketClosedError",
    "HandshakeRejectedError",
    "WebsocketTransport",
    "open_websocket",
    "build_socket_url",
    "AUTH_REJECT_CLOSE_CODES",
]

AUTH_REJECT_CLOSE_CODES = frozenset({1008, 4001, 4003})


class SocketClosedError(Exception):
    """The socket closed; `code` is the close code when one was received."""

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"Socket closed (code={code}, reason={reason!r})")

    @property
    def auth_rejected(self) -> bool:
        return self.code in AUTH_REJECT_CLOSE_CODES


class HandshakeRejectedError(Exception):
    """The endpoint refused the opening handshake (HTTP 401/403)."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        super().__init__(f"Handshake rejected with HTTP {status_code}: {detail}")


class TerminalSocket(Protocol):
    async def send(self, message: Union[str, bytes]) -> None: ...

    async def recv(self) -> Union[str, bytes]: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


SocketFactory = Callable[[str, float], Awaitable[TerminalSocket]]


class WebsocketTransport:
    """TerminalSocket over a `websockets` client connection."""

    __slots__ = ("connection",)

    def __init__(self, connection):
        self.connection = connection

    async def send(self, message: Union[str, bytes]) -> None:
        try:
            await self.connection.send(message)
        except ConnectionClosed as e:
            raise _closed_error(e) from e

    async def recv(self) -> Union[str, bytes]:
        try:
            return await self.connection.recv()
        except ConnectionClosed as e:
            raise _closed_error(e) from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.connection.close(code=code, reason=reason)


def _closed_error(exc: ConnectionClosed) -> SocketClosedError:
    if exc.rcvd is not None:
        return SocketClosedError(exc.rcvd.code, exc.rcvd.reason)
    return SocketClosedError(None, str(exc))


async def open_websocket(url: str, timeout: float) -> WebsocketTransport:
    """
    Open a websocket to a terminal endpoint.

    Keepalive is handled at the application layer, so the library's own
    ping loop is disabled.

    Raises:
        HandshakeRejectedError: On HTTP 401/403
        OSError, asyncio.TimeoutError, WebSocketException: Transient failures
    """
    try:
        connection = await websockets.connect(
            url,
            open_timeout=timeout,
            ping_interval=None,
            max_size=None,
        )
    except InvalidStatus as e:
        status = e.response.status_code
        if status in (401, 403):
            raise HandshakeRejectedError(status, str(e)) from e
        raise
    return WebsocketTransport(connection)


def build_socket_url(
    settings: EndpointSettings,
    protocol: str,
    session_id: Optional[RemoteId],
    token: str,
) -> str:
    """
    {ws|wss}://host:port/ws/{protocol}/{session_id}?token=...

    A session without a remote id yet connects as session 0.
    """
    scheme = "wss" if settings.secure else "ws"
    segment = str(session_id) if session_id is not None else "0"
    return (
        f"{scheme}://{settings.backend_host}:{settings.backend_port}"
        f"/ws/{quote(protocol, safe='')}/{quote(segment, safe='')}"
        f"?token={quote(token, safe='')}"
    )
