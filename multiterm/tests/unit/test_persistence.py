"""
Unit Tests for Persistence Adapter.

Test Coverage:
- Store backends (memory, JSON file, Redis)
- Snapshot save/load and corruption handling
- All-closed flag
- Closed-session log
- Endpoint settings
"""

import json
from unittest.mock import Mock

import pytest
import redis

from multiterm.core.models import ConnectionDescriptor, SocketState
from multiterm.core.persistence import (
    ClosedSessionEntry,
    EndpointSettings,
    JsonFileStore,
    MemoryStore,
    PersistedSession,
    RedisStore,
    RegistrySnapshot,
    SessionPersistence,
    StorageError,
)


@pytest.fixture
def descriptor():
    return ConnectionDescriptor(protocol="ssh", host="10.0.0.5", port=22)


def make_session(descriptor, key="conn-3-session-9-1000", cid=3, sid=9, created_at=1.0):
    return PersistedSession(
        key=key,
        remote_connection_id=cid,
        remote_session_id=sid,
        descriptor=descriptor,
        created_at=created_at,
        socket_state=SocketState.OPEN,
    )


class TestStores:
    """Test suite for key/value store backends."""

    def test_memory_store(self):
        store = MemoryStore()
        store.set("k", "v")

        assert store.get("k") == "v"
        assert "k" in store
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None

    def test_json_file_store_survives_reopen(self, tmp_path):
        path = tmp_path / "state" / "sessions.json"
        store = JsonFileStore(path)
        store.set("a", "1")
        store.set("b", "2")
        store.delete("a")

        reopened = JsonFileStore(path)
        assert reopened.get("a") is None
        assert reopened.get("b") == "2"
        assert json.loads(path.read_text()) == {"b": "2"}

    def test_json_file_store_ignores_garbage(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{not json")

        store = JsonFileStore(path)

        assert store.get("anything") is None

    def test_redis_store_round_trip(self):
        client = Mock()
        client.get.return_value = b"value"
        store = RedisStore(client)

        store.set("k", "value")
        assert store.get("k") == "value"
        store.delete("k")

        client.set.assert_called_once_with("k", "value")
        client.delete.assert_called_once_with("k")

    def test_redis_errors_become_storage_errors(self):
        client = Mock()
        client.get.side_effect = redis.ConnectionError("down")
        store = RedisStore(client)

        with pytest.raises(StorageError):
            store.get("k")


class TestSnapshot:
    """Test suite for snapshot persistence."""

    def test_save_and_load(self, descriptor):
        persistence = SessionPersistence(MemoryStore())
        session = make_session(descriptor)
        persistence.save_snapshot(RegistrySnapshot(
            sessions=[session],
            active_key=session.key,
            last_created_key=session.key,
        ))

        snapshot = persistence.load_snapshot()

        assert snapshot.active_key == session.key
        assert snapshot.last_created_key == session.key
        assert snapshot.find(session.key).descriptor == descriptor
        assert snapshot.sessions[0].socket_state is SocketState.OPEN

    def test_keys_use_prefix(self, descriptor):
        store = MemoryStore()
        persistence = SessionPersistence(store, prefix="tabs")
        persistence.save_snapshot(RegistrySnapshot(sessions=[make_session(descriptor)], active_key="x"))

        assert "tabs:sessions" in store
        assert store.get("tabs:active_session") == "x"

    def test_none_active_key_is_deleted(self, descriptor):
        store = MemoryStore()
        persistence = SessionPersistence(store)
        persistence.save_snapshot(RegistrySnapshot(sessions=[], active_key="x"))
        persistence.save_snapshot(RegistrySnapshot(sessions=[], active_key=None))

        assert persistence.active_key not in store

    def test_missing_snapshot(self):
        assert SessionPersistence(MemoryStore()).load_snapshot() is None

    def test_corrupted_snapshot_reads_as_nothing(self):
        store = MemoryStore({"multiterm:sessions": "[{broken"})

        assert SessionPersistence(store).load_snapshot() is None

    def test_invalid_session_reads_as_nothing(self):
        store = MemoryStore({"multiterm:sessions": json.dumps([{"key": "x"}])})

        assert SessionPersistence(store).load_snapshot() is None

    def test_non_list_snapshot_reads_as_nothing(self):
        store = MemoryStore({"multiterm:sessions": json.dumps({"key": "x"})})

        assert SessionPersistence(store).load_snapshot() is None

    def test_clear_snapshot_keeps_flag_and_log(self, descriptor):
        persistence = SessionPersistence(MemoryStore())
        persistence.save_snapshot(RegistrySnapshot(sessions=[make_session(descriptor)], active_key="x"))
        persistence.mark_all_closed()
        persistence.record_closed(ClosedSessionEntry(key="x", remote_connection_id=3, remote_session_id=9))

        persistence.clear_snapshot()

        assert persistence.load_snapshot() is None
        assert persistence.all_closed()
        assert persistence.was_closed(3, 9)

    def test_write_failures_are_swallowed(self, descriptor):
        store = Mock()
        store.set.side_effect = StorageError("disk full")
        store.get.side_effect = StorageError("disk gone")
        persistence = SessionPersistence(store)

        persistence.save_snapshot(RegistrySnapshot(sessions=[make_session(descriptor)]))

        assert persistence.load_snapshot() is None
        assert not persistence.all_closed()


class TestFlagsAndLog:
    """Test suite for the all-closed flag and closed-session log."""

    def test_all_closed_flag(self):
        persistence = SessionPersistence(MemoryStore())
        assert not persistence.all_closed()

        persistence.mark_all_closed()
        assert persistence.all_closed()

        persistence.clear_all_closed()
        assert not persistence.all_closed()

    def test_closed_log_matches_by_value(self):
        persistence = SessionPersistence(MemoryStore())
        persistence.record_closed(ClosedSessionEntry(key="k", remote_connection_id=3, remote_session_id=9))

        assert persistence.was_closed("3", "9")
        assert not persistence.was_closed(3, 10)
        assert not persistence.was_closed(3, None)

    def test_forget_closed(self):
        persistence = SessionPersistence(MemoryStore())
        persistence.record_closed(ClosedSessionEntry(key="k", remote_connection_id=3, remote_session_id=9))
        persistence.record_closed(ClosedSessionEntry(key="j", remote_connection_id=4, remote_session_id=1))

        persistence.forget_closed(3, 9)

        assert not persistence.was_closed(3, 9)
        assert persistence.was_closed(4, 1)

    def test_closed_log_is_bounded(self):
        persistence = SessionPersistence(MemoryStore(), closed_history_limit=3)
        for sid in range(5):
            persistence.record_closed(ClosedSessionEntry(key=f"k{sid}", remote_connection_id=1, remote_session_id=sid))

        entries = persistence.load_closed_sessions()

        assert [e.remote_session_id for e in entries] == [2, 3, 4]

    def test_corrupted_closed_log(self):
        store = MemoryStore({"multiterm:closed_sessions": "nope"})

        assert SessionPersistence(store).load_closed_sessions() == []


class TestEndpointSettings:
    """Test suite for persisted endpoint settings."""

    def test_defaults_when_missing(self):
        defaults = EndpointSettings(backend_host="gateway", backend_port=9000)
        persistence = SessionPersistence(MemoryStore(), default_settings=defaults)

        assert persistence.load_settings() == defaults

    def test_save_and_load(self):
        persistence = SessionPersistence(MemoryStore())
        persistence.save_settings(EndpointSettings(backend_host="term.example", backend_port=443, secure=True))

        settings = persistence.load_settings()

        assert settings.backend_host == "term.example"
        assert settings.secure

    def test_invalid_settings_fall_back_to_defaults(self):
        store = MemoryStore({"multiterm:settings": json.dumps({"backend_port": 70000})})

        assert SessionPersistence(store).load_settings().backend_port == 8080
