"""
Terminal Workspace - composition root of the session core.

One workspace per application: it builds the store, persistence, event
bus, registry, connection manager, message pipeline and recovery from a
MultitermConfig, and exposes the user-level operations (open, attach,
close, send, resize) on top of them.

Lifecycle:
- start(): resume the previous run's sessions, or open a navigation target
- shutdown(): close sockets and stop tasks; the snapshot is left in place
  so the next start can resume

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional, Union

from rich.console import Console

from .api.catalog import CatalogError, ConnectionCatalog, HttpConnectionCatalog
from .config import MultitermConfig
from .core.connection_manager import ConnectionManager, ReconnectionPolicy, TokenProvider
from .core.event_bus import EventBus
from .core.events import DisplayReady
from .core.lock_table import LockTable
from .core.message_pipeline import MessagePipeline
from .core.models import RemoteId
from .core.persistence import (
    EndpointSettings,
    JsonFileStore,
    KeyValueStore,
    MemoryStore,
    RedisStore,
    SessionPersistence,
)
from .core.recovery import SessionRecovery
from .core.session_registry import SessionRegistry
from .core.transport import SocketFactory
from .observability.dashboard import print_status

logger = logging.getLogger(__name__)

__all__ = [
    "TerminalWorkspace",
    "NavigationTarget",
    "SessionCreationError",
    "open_workspace",
    "configure_logging",
    "build_store",
]

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DEFAULT_STORE_FILE = Path.home() / ".multiterm" / "sessions.json"


class SessionCreationError(Exception):
    """A session could not be created because its connection did not resolve."""
    pass


@dataclass(frozen=True)
class NavigationTarget:
    """Session the host navigated to directly (e.g. from a URL)."""
    connection_id: RemoteId
    session_id: Optional[RemoteId] = None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def build_store(config: MultitermConfig) -> KeyValueStore:
    """Create the key/value store selected by `storage_backend`."""
    if config.storage_backend == "redis":
        logger.info(f"Using Redis session store at {config.redis_url}")
        return RedisStore.from_url(config.redis_url)
    if config.storage_backend == "file":
        path = Path(config.storage_path).expanduser() if config.storage_path else DEFAULT_STORE_FILE
        logger.info(f"Using file session store at {path}")
        return JsonFileStore(path)
    return MemoryStore()


class TerminalWorkspace:
    """Owns every component of the session core for one application."""

    def __init__(
        self,
        config: Optional[MultitermConfig] = None,
        *,
        store: Optional[KeyValueStore] = None,
        catalog: Optional[ConnectionCatalog] = None,
        socket_factory: Optional[SocketFactory] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        """
        Args:
            config: Settings (default: loaded from MULTITERM_* environment)
            store: Key/value store (default: chosen by config.storage_backend)
            catalog: Connection catalog (default: HTTP client on config.catalog_base_url)
            socket_factory: Coroutine fn(url, timeout) -> socket (default: websockets)
            token_provider: Returns the current bearer token
        """
        self.config = config or MultitermConfig()
        cfg = self.config
        self.token_provider: TokenProvider = token_provider or (lambda: None)

        self.store = store if store is not None else build_store(cfg)
        self.persistence = SessionPersistence(
            self.store,
            prefix=cfg.storage_key_prefix,
            closed_history_limit=cfg.closed_history_limit,
            default_settings=EndpointSettings(
                backend_host=cfg.backend_host,
                backend_port=cfg.backend_port,
                secure=cfg.backend_secure,
            ),
        )
        self.bus = EventBus()
        self.registry = SessionRegistry(self.persistence, self.bus)
        self.manager = ConnectionManager(
            self.registry,
            self.bus,
            self.persistence,
            policy=ReconnectionPolicy.from_config(cfg),
            locks=LockTable(ttl=cfg.lock_ttl_seconds),
            socket_factory=socket_factory,
            token_provider=self.token_provider,
            connect_timeout=cfg.connect_timeout_seconds,
            heartbeat_interval=cfg.heartbeat_interval_seconds,
            heartbeat_missed_limit=cfg.heartbeat_missed_limit,
        )
        self.pipeline = MessagePipeline(
            self.registry, self.bus, self.manager, drain_yield=cfg.drain_yield_seconds
        )
        self.recovery = SessionRecovery(self.registry, self.manager, self.persistence)

        self._owns_catalog = catalog is None
        self.catalog: ConnectionCatalog = catalog or HttpConnectionCatalog(
            cfg.catalog_base_url,
            token_provider=self.token_provider,
            timeout=cfg.catalog_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, navigation_target: Optional[NavigationTarget] = None) -> List[str]:
        """
        Resume persisted sessions, or open the navigation target instead.

        Returns:
            Keys of the sessions opened or restored
        """
        if navigation_target is None:
            return await self.recovery.recover()

        if navigation_target.session_id is not None:
            key = await self.open_session(navigation_target.connection_id, navigation_target.session_id)
        else:
            key = await self.open_connection(navigation_target.connection_id)
        return [key]

    async def shutdown(self) -> None:
        logger.info("Shutting down terminal workspace...")
        await self.pipeline.stop()
        await self.manager.shutdown()
        self.bus.close()
        if self._owns_catalog and isinstance(self.catalog, HttpConnectionCatalog):
            await self.catalog.aclose()
        logger.info("Terminal workspace shut down")

    async def __aenter__(self) -> TerminalWorkspace:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def open_connection(self, connection_id: RemoteId) -> str:
        """
        Open a new terminal on a saved connection.

        Resolves the connection, asks the backend for a new remote session,
        registers it and connects.

        Raises:
            SessionCreationError: The connection could not be resolved or
                no remote session could be created; nothing is registered
        """
        try:
            descriptor = await self.catalog.resolve(connection_id)
            session_id = await self.catalog.create_session(connection_id)
        except CatalogError as e:
            logger.error(f"Cannot open connection {connection_id}: {e}")
            raise SessionCreationError(f"Cannot open connection {connection_id}: {e}") from e

        key = self.registry.create(descriptor, connection_id, session_id)
        await self.manager.connect(key)
        return key

    async def open_session(self, connection_id: RemoteId, remote_session_id: RemoteId) -> str:
        """
        Attach to an existing remote session, reusing its record if open.

        Raises:
            SessionCreationError: The connection could not be resolved
        """
        existing = self.registry.find(connection_id, remote_session_id)
        if existing is not None:
            self.registry.set_active(existing.key)
            await self.manager.connect(existing.key)
            return existing.key

        try:
            descriptor = await self.catalog.resolve(connection_id)
        except CatalogError as e:
            logger.error(f"Cannot attach to session {remote_session_id} of connection {connection_id}: {e}")
            raise SessionCreationError(f"Cannot resolve connection {connection_id}: {e}") from e

        key = self.registry.create(descriptor, connection_id, remote_session_id)
        await self.manager.connect(key)
        return key

    async def close_session(self, key: str, terminate_remote: bool = False) -> None:
        """Close a session; optionally end the remote session as well."""
        record = self.registry.get(key)
        if record is None:
            logger.warning(f"Ignoring close for unknown session {key}")
            return
        self.registry.close(key)
        if terminate_remote and record.remote_session_id is not None:
            await self._end_remote(record.remote_session_id)

    async def close_all(self, terminate_remote: bool = False) -> None:
        records = self.registry.records()
        self.registry.clear_all()
        if terminate_remote:
            for record in records:
                if record.remote_session_id is not None:
                    await self._end_remote(record.remote_session_id)

    async def _end_remote(self, session_id: RemoteId) -> None:
        try:
            await self.catalog.end_session(session_id)
        except CatalogError as e:
            logger.warning(f"Failed to end remote session {session_id}: {e}")

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def display_ready(self, key: str) -> None:
        """Signal that the display for `key` is mounted; releases held output."""
        self.bus.publish(DisplayReady(key=key))

    async def send(self, key: str, data: Union[str, bytes]) -> bool:
        return await self.pipeline.send(key, data)

    async def resize(self, key: str, cols: int, rows: int) -> bool:
        return await self.manager.resize(key, cols, rows)

    def set_active(self, key: str) -> None:
        self.registry.set_active(key)

    # ------------------------------------------------------------------
    # Settings and status
    # ------------------------------------------------------------------

    @property
    def endpoint(self) -> EndpointSettings:
        return self.persistence.load_settings()

    def update_endpoint(self, settings: EndpointSettings) -> None:
        """Persist new endpoint settings; used by subsequent connects."""
        self.persistence.save_settings(settings)
        logger.info(f"Endpoint set to {settings.backend_host}:{settings.backend_port}")

    def print_status(self, console: Optional[Console] = None) -> None:
        print_status(self, console)


@asynccontextmanager
async def open_workspace(
    config: Optional[MultitermConfig] = None,
    navigation_target: Optional[NavigationTarget] = None,
    **kwargs,
) -> AsyncIterator[TerminalWorkspace]:
    """
    Workspace lifespan manager.

    Startup:
    - Configure logging
    - Build components
    - Resume sessions or open the navigation target

    Shutdown:
    - Close sockets and stop tasks (snapshot kept for the next start)
    """
    config = config or MultitermConfig()
    configure_logging(config.log_level)
    logger.info("Starting terminal workspace...")

    workspace = TerminalWorkspace(config, **kwargs)
    try:
        await workspace.start(navigation_target)
        logger.info(f"Terminal workspace started with {len(workspace.registry)} session(s)")
        yield workspace
    finally:
        await workspace.shutdown()
