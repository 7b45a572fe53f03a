"""
Session Recovery - resume the previous run's sessions at start-up.

Policy:
- Nothing happens when the registry already holds sessions, when the
  caller navigated straight to a session, or when the user closed every
  session before leaving
- Every persisted session with both remote ids that the user did not close
  explicitly is restored under its old key (no new remote session is made)
- Active: persisted active key, else last-created key, else the last one
  restored; then every restored session is connected
- A broken snapshot means an empty registry, never an exception
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from pydantic import ValidationError

from .connection_manager import ConnectionManager
from .persistence import SessionPersistence, StorageError
from .session_registry import SessionRegistry
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = ["SessionRecovery"]


class SessionRecovery:

    __slots__ = ("registry", "manager", "persistence")

    def __init__(
        self,
        registry: SessionRegistry,
        manager: ConnectionManager,
        persistence: SessionPersistence,
    ):
        self.registry = registry
        self.manager = manager
        self.persistence = persistence

    async def recover(self, navigation_target: Optional[object] = None) -> List[str]:
        """
        Restore and reconnect persisted sessions.

        Args:
            navigation_target: Session the caller is about to open directly;
                any value disables automatic recovery

        Returns:
            Keys of the restored sessions (empty when nothing was restored)
        """
        if len(self.registry) or navigation_target is not None:
            logger.debug("Skipping session recovery: registry in use or navigation target given")
            return []
        if self.persistence.all_closed():
            logger.info("Skipping session recovery: all sessions were closed")
            return []

        try:
            restored = self._restore()
        except (StorageError, ValueError, ValidationError) as e:
            logger.error(f"Session recovery failed, starting empty: {e}")
            metrics.record_recovery("failed", 0)
            return []

        if not restored:
            metrics.record_recovery("empty", 0)
            return []

        logger.info(f"Restored {len(restored)} session(s), reconnecting")
        metrics.record_recovery("restored", len(restored))
        results = await asyncio.gather(
            *(self.manager.connect(key) for key in restored),
            return_exceptions=True,
        )
        for key, result in zip(restored, results):
            if isinstance(result, BaseException):
                logger.error(f"Reconnect of restored session {key} failed: {result}")
        return restored

    def _restore(self) -> List[str]:
        snapshot = self.persistence.load_snapshot()
        if snapshot is None or not snapshot.sessions:
            return []

        closed = self.persistence.load_closed_sessions()
        restored: List[str] = []
        key_map = {}
        for persisted in sorted(snapshot.sessions, key=lambda s: s.created_at):
            if persisted.remote_session_id is None:
                logger.debug(f"Not restoring {persisted.key}: no remote session id")
                continue
            if any(e.matches(persisted.remote_connection_id, persisted.remote_session_id) for e in closed):
                logger.debug(f"Not restoring {persisted.key}: closed by the user")
                continue
            key = self.registry.restore(persisted)
            key_map[persisted.key] = key
            if key not in restored:
                restored.append(key)

        if not restored:
            return []

        target = (
            key_map.get(snapshot.active_key or "")
            or key_map.get(snapshot.last_created_key or "")
            or restored[-1]
        )
        self.registry.set_active(target)
        return restored
