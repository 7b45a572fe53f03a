"""
Persistence Adapter - Snapshot Storage for Reload Recovery.

Thin wrapper over a synchronous key/value store. The registry writes a
serializable projection of its state on every mutation; start-up reads it
once to resume sessions.

Storage Backends:
- MemoryStore: process-local dict (tests, embedded hosts)
- RedisStore: redis-py synchronous client (shared across processes)
- JsonFileStore: single JSON document on disk (desktop hosts)

Key Layout ({prefix} defaults to "multiterm"):
- {prefix}:sessions             → JSON list of persisted sessions
- {prefix}:active_session       → active session key
- {prefix}:last_created_session → most recently created session key
- {prefix}:all_sessions_closed  → "true" while the user closed everything
- {prefix}:closed_sessions      → JSON list of explicitly closed sessions
- {prefix}:settings             → JSON endpoint settings block

Failure Policy:
- Reads never raise: missing, corrupt or invalid values read as "nothing"
- Writes log and continue: a broken store must not break session handling

Author: Backend Lead Developer
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import redis
from pydantic import BaseModel, Field, ValidationError

from .models import ConnectionDescriptor, RemoteId, SocketState

logger = logging.getLogger(__name__)

__all__ = [
    "KeyValueStore",
    "StorageError",
    "MemoryStore",
    "RedisStore",
    "JsonFileStore",
    "PersistedSession",
    "RegistrySnapshot",
    "ClosedSessionEntry",
    "EndpointSettings",
    "SessionPersistence",
]


class StorageError(Exception):
    """Raised by a store when the underlying backend fails."""
    pass


class KeyValueStore(Protocol):
    """Synchronous string key/value store."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """In-process store backed by a dict."""

    __slots__ = ("_data",)

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def keys(self) -> List[str]:
        return list(self._data)


class RedisStore:
    """
    Store backed by a synchronous Redis client.

    Values are stored as plain strings under the given keys. Redis failures
    are wrapped in StorageError so callers handle a single error type.
    """

    __slots__ = ("redis",)

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> RedisStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> Optional[str]:
        try:
            value = self.redis.get(key)
        except redis.RedisError as e:
            raise StorageError(f"Redis GET {key} failed: {e}") from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        try:
            self.redis.set(key, value)
        except redis.RedisError as e:
            raise StorageError(f"Redis SET {key} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.redis.delete(key)
        except redis.RedisError as e:
            raise StorageError(f"Redis DEL {key} failed: {e}") from e


class JsonFileStore:
    """
    Store backed by one JSON object on disk.

    The whole document is rewritten on each change through a temporary file
    and os.replace, so a crash never leaves a half-written file behind.
    """

    __slots__ = ("path", "_data")

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._data = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable store file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring store file {self.path}: not a JSON object")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _flush(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".multiterm-")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh)
            os.replace(tmp, self.path)
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()


# ========= Persisted models =========

class PersistedSession(BaseModel):
    """SessionRecord minus the socket handle and inbound queue."""
    key: str = Field(min_length=1)
    remote_connection_id: RemoteId
    remote_session_id: Optional[RemoteId] = None
    descriptor: ConnectionDescriptor
    created_at: float
    socket_state: SocketState = SocketState.IDLE
    last_activity_at: Optional[float] = None
    measured_latency_ms: Optional[float] = None
    display_cols: Optional[int] = None
    display_rows: Optional[int] = None


class RegistrySnapshot(BaseModel):
    """Serializable projection of the registry."""
    sessions: List[PersistedSession] = Field(default_factory=list)
    active_key: Optional[str] = None
    last_created_key: Optional[str] = None

    def find(self, key: Optional[str]) -> Optional[PersistedSession]:
        if not key:
            return None
        for session in self.sessions:
            if session.key == key:
                return session
        return None


class ClosedSessionEntry(BaseModel):
    """A session the user closed on purpose; recovery must not revive it."""
    key: str
    remote_connection_id: RemoteId
    remote_session_id: Optional[RemoteId] = None
    closed_at: float = Field(default_factory=time.time)

    def matches(self, connection_id: RemoteId, session_id: Optional[RemoteId]) -> bool:
        return (
            str(self.remote_connection_id) == str(connection_id)
            and self.remote_session_id is not None
            and session_id is not None
            and str(self.remote_session_id) == str(session_id)
        )


class EndpointSettings(BaseModel):
    """Where the terminal websocket endpoint lives."""
    backend_host: str = "localhost"
    backend_port: int = Field(default=8080, ge=1, le=65535)
    secure: bool = False


class SessionPersistence:
    """
    Snapshot reader/writer over a KeyValueStore.

    Attributes:
        store: Underlying key/value store
        prefix: Key namespace
        closed_history_limit: Max entries kept in the closed-session log
        default_settings: Endpoint settings used when none are stored
    """

    __slots__ = ("store", "prefix", "closed_history_limit", "default_settings")

    def __init__(
        self,
        store: KeyValueStore,
        prefix: str = "multiterm",
        closed_history_limit: int = 50,
        default_settings: Optional[EndpointSettings] = None,
    ):
        self.store = store
        self.prefix = prefix
        self.closed_history_limit = closed_history_limit
        self.default_settings = default_settings or EndpointSettings()

    # Keys

    @property
    def sessions_key(self) -> str:
        return f"{self.prefix}:sessions"

    @property
    def active_key(self) -> str:
        return f"{self.prefix}:active_session"

    @property
    def last_created_key(self) -> str:
        return f"{self.prefix}:last_created_session"

    @property
    def all_closed_key(self) -> str:
        return f"{self.prefix}:all_sessions_closed"

    @property
    def closed_log_key(self) -> str:
        return f"{self.prefix}:closed_sessions"

    @property
    def settings_key(self) -> str:
        return f"{self.prefix}:settings"

    # Low-level helpers

    def _read(self, key: str) -> Optional[str]:
        try:
            return self.store.get(key)
        except StorageError as e:
            logger.warning(f"Persistence read failed for {key}: {e}")
            return None

    def _write(self, key: str, value: Optional[str]) -> None:
        try:
            if value is None:
                self.store.delete(key)
            else:
                self.store.set(key, value)
        except StorageError as e:
            logger.error(f"Persistence write failed for {key}: {e}")

    # Snapshot

    def save_snapshot(self, snapshot: RegistrySnapshot) -> None:
        """Write the session list, active key and last-created key."""
        payload = json.dumps([s.model_dump(mode="json") for s in snapshot.sessions])
        self._write(self.sessions_key, payload)
        self._write(self.active_key, snapshot.active_key)
        self._write(self.last_created_key, snapshot.last_created_key)

    def load_snapshot(self) -> Optional[RegistrySnapshot]:
        """
        Read the last snapshot.

        Returns:
            RegistrySnapshot, or None when nothing usable is stored
        """
        raw = self._read(self.sessions_key)
        if not raw:
            return None
        try:
            sessions = json.loads(raw)
            if not isinstance(sessions, list):
                raise ValueError("session list is not a JSON array")
            snapshot = RegistrySnapshot(
                sessions=sessions,
                active_key=self._read(self.active_key),
                last_created_key=self._read(self.last_created_key),
            )
        except (ValueError, ValidationError) as e:
            logger.warning(f"Discarding corrupted session snapshot: {e}")
            return None
        return snapshot

    def clear_snapshot(self) -> None:
        """Remove every persisted session key (flag and closed log stay)."""
        for key in (self.sessions_key, self.active_key, self.last_created_key):
            self._write(key, None)

    # All-closed flag

    def mark_all_closed(self) -> None:
        self._write(self.all_closed_key, "true")

    def clear_all_closed(self) -> None:
        self._write(self.all_closed_key, None)

    def all_closed(self) -> bool:
        return (self._read(self.all_closed_key) or "").strip().lower() == "true"

    # Closed-session log

    def load_closed_sessions(self) -> List[ClosedSessionEntry]:
        raw = self._read(self.closed_log_key)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
            if not isinstance(entries, list):
                raise ValueError("closed log is not a JSON array")
            return [ClosedSessionEntry.model_validate(e) for e in entries]
        except (ValueError, ValidationError) as e:
            logger.warning(f"Discarding corrupted closed-session log: {e}")
            return []

    def _save_closed_sessions(self, entries: List[ClosedSessionEntry]) -> None:
        entries = entries[-self.closed_history_limit:] if self.closed_history_limit > 0 else []
        self._write(
            self.closed_log_key,
            json.dumps([e.model_dump(mode="json") for e in entries]),
        )

    def record_closed(self, entry: ClosedSessionEntry) -> None:
        entries = self.load_closed_sessions()
        entries.append(entry)
        self._save_closed_sessions(entries)

    def forget_closed(self, connection_id: RemoteId, session_id: Optional[RemoteId]) -> None:
        entries = self.load_closed_sessions()
        kept = [e for e in entries if not e.matches(connection_id, session_id)]
        if len(kept) != len(entries):
            self._save_closed_sessions(kept)

    def was_closed(self, connection_id: RemoteId, session_id: Optional[RemoteId]) -> bool:
        return any(e.matches(connection_id, session_id) for e in self.load_closed_sessions())

    # Endpoint settings

    def load_settings(self) -> EndpointSettings:
        raw = self._read(self.settings_key)
        if not raw:
            return self.default_settings
        try:
            return EndpointSettings.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Using default endpoint settings, stored block invalid: {e}")
            return self.default_settings

    def save_settings(self, settings: EndpointSettings) -> None:
        self._write(self.settings_key, settings.model_dump_json())
