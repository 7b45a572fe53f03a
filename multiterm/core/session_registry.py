"""
Session Registry - Authoritative In-Memory Session Table.

Complete implementation with:
- Idempotent creation keyed by (remote connection id, remote session id)
- Active-session tracking with a "no session" sentinel
- Snapshot persistence on every mutation
- Change notifications through the event bus
- Explicit "all sessions closed" marker so recovery respects user intent

Engineering Standards:
- Single writer: only registry operations mutate records
- Operations are synchronous, so each runs inside one event-loop step
- Records are shared by reference; other components never copy them
- Absent keys are logged and ignored (benign under async interleavings)

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Union

from .events import SessionActivated, SessionAdded, SessionClosed, SessionUpdated
from .event_bus import EventBus
from .models import ConnectionDescriptor, DisplaySize, RemoteId, SocketState
from .persistence import (
    ClosedSessionEntry,
    PersistedSession,
    RegistrySnapshot,
    SessionPersistence,
)
from ..observability import metrics

logger = logging.getLogger(__name__)

__all__ = ["SessionRegistry", "SessionRecord", "RegistryState", "NO_SESSION"]

NO_SESSION = "no-session"


@dataclass(eq=False)
class SessionRecord:
    """
    Authoritative state of one open or opening remote terminal.

    Attributes:
        key: Unique session handle (connection id + session id + creation ms)
        remote_connection_id: Saved connection the session targets
        remote_session_id: Backend-issued session handle (None until assigned)
        descriptor: Connection snapshot taken at creation time
        created_at: Creation timestamp (defines creation order)
        socket_state: Current socket state machine position
        socket_handle: Live socket, owned by the connection manager
        inbound_queue: Pending raw messages, owned by the message pipeline
        last_activity_at: Last inbound/outbound activity timestamp
        measured_latency_ms: Last heartbeat round-trip in milliseconds
        display_size: Last negotiated terminal geometry
        reconnect_attempts: Retries spent in the current reconnection streak
        last_error: Last error text shown to the user
    """
    key: str
    remote_connection_id: RemoteId
    remote_session_id: Optional[RemoteId]
    descriptor: ConnectionDescriptor
    created_at: float
    socket_state: SocketState = SocketState.IDLE
    socket_handle: Any = None
    inbound_queue: Deque[Union[str, bytes]] = field(default_factory=deque)
    last_activity_at: Optional[float] = None
    measured_latency_ms: Optional[float] = None
    display_size: Optional[DisplaySize] = None
    reconnect_attempts: int = 0
    last_error: Optional[str] = None

    @property
    def lock_key(self) -> tuple:
        # Sessions without a remote id yet cannot collide with each other.
        if self.remote_session_id is None:
            return (str(self.remote_connection_id), self.key)
        return (str(self.remote_connection_id), str(self.remote_session_id))

    def targets(self, connection_id: RemoteId, session_id: Optional[RemoteId]) -> bool:
        """True if this record is the non-empty pair (connection_id, session_id)."""
        if session_id is None or self.remote_session_id is None:
            return False
        return (
            str(self.remote_connection_id) == str(connection_id)
            and str(self.remote_session_id) == str(session_id)
        )

    def to_persisted(self) -> PersistedSession:
        return PersistedSession(
            key=self.key,
            remote_connection_id=self.remote_connection_id,
            remote_session_id=self.remote_session_id,
            descriptor=self.descriptor,
            created_at=self.created_at,
            socket_state=self.socket_state,
            last_activity_at=self.last_activity_at,
            measured_latency_ms=self.measured_latency_ms,
            display_cols=self.display_size.cols if self.display_size else None,
            display_rows=self.display_size.rows if self.display_size else None,
        )


@dataclass(frozen=True)
class RegistryState:
    """Read-only view of the registry after an operation."""
    sessions: Mapping[str, SessionRecord]
    active_key: str


# Fields registry.update() may merge; everything else is fixed at creation
# or owned by another component.
_MUTABLE_FIELDS = frozenset({
    "remote_session_id",
    "socket_state",
    "socket_handle",
    "last_activity_at",
    "measured_latency_ms",
    "display_size",
    "reconnect_attempts",
    "last_error",
})


class SessionRegistry:
    """
    Single writer of session state.

    Teardown:
    The connection manager registers `teardown`, a synchronous callable
    invoked with the record just before the registry drops it. The registry
    never touches sockets itself.
    """

    __slots__ = (
        "persistence",
        "bus",
        "teardown",
        "_clock",
        "_sessions",
        "_active_key",
        "_last_created_key",
        "stats",
    )

    def __init__(
        self,
        persistence: SessionPersistence,
        bus: EventBus,
        teardown: Optional[Callable[[SessionRecord], None]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize an empty registry.

        Args:
            persistence: Snapshot writer
            bus: Event bus for change notifications
            teardown: Hook that closes a record's socket before removal
            clock: Wall-clock source (default: time.time)
        """
        self.persistence = persistence
        self.bus = bus
        self.teardown = teardown
        self._clock = clock or time.time
        self._sessions: Dict[str, SessionRecord] = {}
        self._active_key: str = NO_SESSION
        self._last_created_key: Optional[str] = None

        self.stats = {
            "sessions_created": 0,
            "sessions_restored": 0,
            "sessions_closed": 0,
            "duplicate_creates": 0,
            "missing_key_operations": 0,
        }

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[SessionRecord]:
        return self._sessions.get(key)

    def find(self, connection_id: RemoteId, session_id: Optional[RemoteId]) -> Optional[SessionRecord]:
        """Find the record for a non-empty (connection id, session id) pair."""
        for record in self._sessions.values():
            if record.targets(connection_id, session_id):
                return record
        return None

    def keys(self) -> List[str]:
        return list(self._sessions)

    def records(self) -> List[SessionRecord]:
        return list(self._sessions.values())

    @property
    def active_key(self) -> str:
        return self._active_key

    @property
    def active_record(self) -> Optional[SessionRecord]:
        return self._sessions.get(self._active_key)

    @property
    def last_created_key(self) -> Optional[str]:
        return self._last_created_key

    @property
    def state(self) -> RegistryState:
        return RegistryState(MappingProxyType(dict(self._sessions)), self._active_key)

    def is_current(self, record: SessionRecord) -> bool:
        """True while `record` is still the registry's record for its key."""
        return self._sessions.get(record.key) is record

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(
            sessions=[r.to_persisted() for r in self._sessions.values()],
            active_key=None if self._active_key == NO_SESSION else self._active_key,
            last_created_key=self._last_created_key,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        descriptor: ConnectionDescriptor,
        remote_connection_id: RemoteId,
        remote_session_id: Optional[RemoteId] = None,
    ) -> str:
        """
        Create a session record, or activate the one that already targets
        the same remote session.

        Args:
            descriptor: Connection snapshot
            remote_connection_id: Saved connection id
            remote_session_id: Backend session id (None until assigned)

        Returns:
            Key of the new or existing record
        """
        existing = self.find(remote_connection_id, remote_session_id)
        if existing is not None:
            self.stats["duplicate_creates"] += 1
            logger.info(
                f"Session for connection {remote_connection_id}/{remote_session_id} "
                f"already open as {existing.key}, activating it"
            )
            self._activate(existing.key)
            return existing.key

        created_at = self._clock()
        key = self._allocate_key(remote_connection_id, remote_session_id, created_at)
        record = SessionRecord(
            key=key,
            remote_connection_id=remote_connection_id,
            remote_session_id=remote_session_id,
            descriptor=descriptor,
            created_at=created_at,
        )
        self._sessions[key] = record
        self._last_created_key = key
        self.stats["sessions_created"] += 1
        metrics.record_session_created(descriptor.protocol)
        metrics.update_active_sessions(len(self._sessions))

        # The user opened something again: automatic recovery is back on.
        self.persistence.clear_all_closed()
        self.persistence.forget_closed(remote_connection_id, remote_session_id)

        previous = self._active_key
        self._active_key = key
        self._persist()

        logger.info(f"Created session {key} ({descriptor.protocol}://{descriptor.host}:{descriptor.port})")
        self.bus.publish(SessionAdded(
            key=key,
            remote_connection_id=remote_connection_id,
            remote_session_id=remote_session_id,
        ))
        self.bus.publish(SessionActivated(key=key, previous_key=previous))
        return key

    def restore(self, persisted: PersistedSession) -> str:
        """
        Re-insert a persisted session during recovery.

        Keeps the persisted key and creation time, starts the socket at IDLE,
        leaves the active key untouched.

        Returns:
            Key of the restored (or already present) record
        """
        existing = self.find(persisted.remote_connection_id, persisted.remote_session_id)
        if existing is not None:
            return existing.key

        key = persisted.key
        if key in self._sessions:
            key = self._allocate_key(
                persisted.remote_connection_id,
                persisted.remote_session_id,
                self._clock(),
            )

        display_size = None
        if persisted.display_cols and persisted.display_rows:
            display_size = DisplaySize(persisted.display_cols, persisted.display_rows)

        record = SessionRecord(
            key=key,
            remote_connection_id=persisted.remote_connection_id,
            remote_session_id=persisted.remote_session_id,
            descriptor=persisted.descriptor,
            created_at=persisted.created_at,
            last_activity_at=persisted.last_activity_at,
            measured_latency_ms=persisted.measured_latency_ms,
            display_size=display_size,
        )
        self._sessions[key] = record
        if self._last_created_key is None or (
            self._last_created_key in self._sessions
            and self._sessions[self._last_created_key].created_at <= record.created_at
        ):
            self._last_created_key = key
        self.stats["sessions_restored"] += 1
        metrics.update_active_sessions(len(self._sessions))
        self._persist()

        logger.info(f"Restored session {key} from snapshot")
        self.bus.publish(SessionAdded(
            key=key,
            remote_connection_id=record.remote_connection_id,
            remote_session_id=record.remote_session_id,
        ))
        return key

    def update(self, key: str, **fields: Any) -> RegistryState:
        """
        Merge fields into the record for `key`.

        Raises:
            ValueError: For unknown or immutable field names, or when a new
                remote_session_id would duplicate another record's pair
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        record = self._sessions.get(key)
        if record is None:
            self.stats["missing_key_operations"] += 1
            logger.warning(f"Ignoring update for unknown session {key}: {sorted(fields)}")
            return self.state

        if "remote_session_id" in fields:
            clash = self.find(record.remote_connection_id, fields["remote_session_id"])
            if clash is not None and clash is not record:
                raise ValueError(
                    f"Session {clash.key} already targets "
                    f"{record.remote_connection_id}/{fields['remote_session_id']}"
                )

        for name, value in fields.items():
            setattr(record, name, value)

        self._persist()
        self.bus.publish(SessionUpdated(key=key, fields=tuple(fields)))
        return self.state

    def close(self, key: str) -> RegistryState:
        """
        Tear down and remove a session. Idempotent.

        If the closed session was active, the most recently created remaining
        session becomes active (or the sentinel when none remain).
        """
        record = self._sessions.get(key)
        if record is None:
            self.stats["missing_key_operations"] += 1
            logger.warning(f"Ignoring close for unknown session {key}")
            return self.state

        if self.teardown is not None:
            self.teardown(record)

        del self._sessions[key]
        record.inbound_queue.clear()
        self.stats["sessions_closed"] += 1
        metrics.record_session_closed()
        metrics.update_active_sessions(len(self._sessions))

        self.persistence.record_closed(ClosedSessionEntry(
            key=key,
            remote_connection_id=record.remote_connection_id,
            remote_session_id=record.remote_session_id,
            closed_at=self._clock(),
        ))
        if self._last_created_key == key:
            self._last_created_key = None

        previous = self._active_key
        if self._active_key == key:
            self._active_key = self._most_recent_key()
        self._persist()
        if not self._sessions:
            self.persistence.mark_all_closed()

        logger.info(f"Closed session {key}")
        self.bus.publish(SessionClosed(
            key=key,
            remote_connection_id=record.remote_connection_id,
            remote_session_id=record.remote_session_id,
        ))
        if self._active_key != previous:
            self.bus.publish(SessionActivated(key=self._active_key, previous_key=previous))
        return self.state

    def set_active(self, key: str) -> RegistryState:
        if key == self._active_key:
            return self.state
        if key not in self._sessions:
            self.stats["missing_key_operations"] += 1
            logger.warning(f"Ignoring activation of unknown session {key}")
            return self.state
        self._activate(key)
        return self.state

    def clear_all(self) -> RegistryState:
        """Close every session, forget the snapshot, mark everything closed."""
        records = list(self._sessions.values())
        for record in records:
            if self.teardown is not None:
                self.teardown(record)
            record.inbound_queue.clear()

        self._sessions.clear()
        previous = self._active_key
        self._active_key = NO_SESSION
        self._last_created_key = None
        self.stats["sessions_closed"] += len(records)
        for _ in records:
            metrics.record_session_closed()
        metrics.update_active_sessions(0)

        self.persistence.clear_snapshot()
        self.persistence.mark_all_closed()

        logger.info(f"Cleared all sessions ({len(records)} closed)")
        for record in records:
            self.bus.publish(SessionClosed(
                key=record.key,
                remote_connection_id=record.remote_connection_id,
                remote_session_id=record.remote_session_id,
            ))
        if previous != NO_SESSION:
            self.bus.publish(SessionActivated(key=NO_SESSION, previous_key=previous))
        return self.state

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _activate(self, key: str) -> None:
        if key == self._active_key:
            return
        previous = self._active_key
        self._active_key = key
        self._persist()
        self.bus.publish(SessionActivated(key=key, previous_key=previous))

    def _most_recent_key(self) -> str:
        if not self._sessions:
            return NO_SESSION
        return max(self._sessions.values(), key=lambda r: r.created_at).key

    def _allocate_key(
        self,
        connection_id: RemoteId,
        session_id: Optional[RemoteId],
        created_at: float,
    ) -> str:
        stamp = int(created_at * 1000)
        sid = "pending" if session_id is None else session_id
        while True:
            key = f"conn-{connection_id}-session-{sid}-{stamp}"
            if key not in self._sessions:
                return key
            stamp += 1

    def _persist(self) -> None:
        self.persistence.save_snapshot(self.snapshot())
