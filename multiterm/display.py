"""
Display binding - connects one session to one terminal surface.

A surface is whatever renders terminal output (a widget, a file, a test
double). It writes output, reports keystrokes through `on_input`, takes a
new geometry through `resize` and releases its resources on `dispose`.

The binding writes the session's inbound data to the surface, forwards
keystrokes to the session in typing order, and forwards geometry changes.
Attaching publishes DISPLAY_READY, which releases any output that arrived
before the surface existed. Detaching disposes the surface.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Protocol, Union

from .core.events import EventKind, InboundData, SessionClosed, SessionEvent

logger = logging.getLogger(__name__)

__all__ = ["DisplayBinding", "TerminalSurface"]

InputCallback = Callable[[Union[str, bytes]], None]


class TerminalSurface(Protocol):
    def write(self, data: Union[str, bytes]) -> None: ...

    def on_input(self, callback: InputCallback) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def dispose(self) -> None: ...


class DisplayBinding:
    """Binds `surface` to the session `key` of a TerminalWorkspace."""

    __slots__ = ("workspace", "key", "surface", "_outbound", "_writer", "_unsubscribers")

    def __init__(self, workspace, key: str, surface: TerminalSurface):
        self.workspace = workspace
        self.key = key
        self.surface = surface
        self._outbound: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []

    @property
    def attached(self) -> bool:
        return self._writer is not None

    def attach(self) -> None:
        if self.attached:
            return
        bus = self.workspace.bus
        self._unsubscribers = [
            bus.subscribe(EventKind.INBOUND_DATA, self._on_inbound),
            bus.subscribe(EventKind.SESSION_CLOSED, self._on_closed),
        ]
        self.surface.on_input(self.feed)
        self._writer = asyncio.create_task(self._write_loop(), name=f"display_writer_{self.key}")
        self.workspace.display_ready(self.key)
        logger.debug(f"Display attached to {self.key}")

    def detach(self) -> None:
        """Stop forwarding in both directions and dispose the surface."""
        if not self.attached:
            return
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        writer, self._writer = self._writer, None
        if writer is not asyncio.current_task():
            writer.cancel()
        self.surface.dispose()
        logger.debug(f"Display detached from {self.key}")

    def feed(self, data: Union[str, bytes]) -> None:
        """Queue user input; it is sent in the order fed."""
        if self.attached:
            self._outbound.put_nowait(data)

    async def flush(self) -> None:
        """Wait until every queued keystroke has been handed to the socket."""
        await self._outbound.join()

    async def resize(self, cols: int, rows: int) -> bool:
        """
        Apply a new geometry to the surface and the session.

        Returns:
            True if a resize frame was sent to the session
        """
        self.surface.resize(cols, rows)
        return await self.workspace.resize(self.key, cols, rows)

    def _on_inbound(self, event: SessionEvent) -> None:
        if isinstance(event, InboundData) and event.key == self.key:
            self.surface.write(event.payload)

    def _on_closed(self, event: SessionEvent) -> None:
        if isinstance(event, SessionClosed) and event.key == self.key:
            self.detach()

    async def _write_loop(self) -> None:
        while True:
            data = await self._outbound.get()
            try:
                if not await self.workspace.send(self.key, data):
                    logger.debug(f"Input for {self.key} dropped, session not open")
            except Exception as e:
                logger.error(f"Sending input to {self.key} failed: {e}", exc_info=True)
            finally:
                self._outbound.task_done()
