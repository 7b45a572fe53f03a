"""
Status display for the session core.

Renders the registry as a rich table: one row per session with its socket
state, reconnection counter, heartbeat latency, geometry and last error.
Hosts embed the table in their own UI or print it for diagnostics.
"""

from __future__ import annotations

import time
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..core.models import SocketState
from ..core.session_registry import SessionRegistry

__all__ = ["build_session_table", "build_stats_panel", "print_status"]

_STATE_STYLES = {
    SocketState.IDLE: "dim",
    SocketState.CONNECTING: "yellow",
    SocketState.OPEN: "green",
    SocketState.CLOSING: "yellow",
    SocketState.CLOSED: "red",
    SocketState.FAILED: "bold red",
}


def build_session_table(registry: SessionRegistry, max_attempts: Optional[int] = None) -> Table:
    table = Table(title="Terminal Sessions")
    table.add_column("", no_wrap=True)
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Target", style="green")
    table.add_column("State")
    table.add_column("Retries", justify="right")
    table.add_column("Latency", style="magenta", justify="right")
    table.add_column("Size", style="blue")
    table.add_column("Idle", justify="right")
    table.add_column("Last error", style="red")

    now = time.time()
    for record in sorted(registry.records(), key=lambda r: r.created_at):
        descriptor = record.descriptor
        state = record.socket_state
        if state is SocketState.CLOSED and record.reconnect_attempts:
            state_text = f"[{_STATE_STYLES[state]}]reconnecting[/]"
        else:
            state_text = f"[{_STATE_STYLES[state]}]{state.value}[/]"

        retries = str(record.reconnect_attempts)
        if max_attempts is not None:
            retries = f"{record.reconnect_attempts}/{max_attempts}"

        table.add_row(
            "*" if record.key == registry.active_key else "",
            record.key,
            f"{descriptor.protocol}://{descriptor.host}:{descriptor.port}",
            state_text,
            retries,
            f"{record.measured_latency_ms:.1f}ms" if record.measured_latency_ms is not None else "-",
            f"{record.display_size.cols}x{record.display_size.rows}" if record.display_size else "-",
            f"{now - record.last_activity_at:.0f}s" if record.last_activity_at else "-",
            record.last_error or "",
        )
    return table


def build_stats_panel(stats: dict) -> Panel:
    """Connection manager counters as a compact panel."""
    lines = [f"[bold]{name.replace('_', ' ')}[/bold]: {value}" for name, value in sorted(stats.items())]
    return Panel("\n".join(lines), title="Connections", expand=False)


def print_status(workspace, console: Optional[Console] = None) -> None:
    """Print the session table and connection counters of a workspace."""
    console = console or Console()
    console.print(build_session_table(workspace.registry, workspace.manager.policy.max_attempts))
    console.print(build_stats_panel(workspace.manager.get_stats()))
