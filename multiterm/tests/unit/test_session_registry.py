"""
Unit Tests for Session Registry.

Test Coverage:
- Creation, key format and deduplication by remote pair
- Active-session selection and the no-session sentinel
- Updates (allowed fields, unknown keys)
- Close idempotency and the all-closed flag
- Snapshot persistence and restore
- Change notifications
"""

from unittest.mock import Mock

import pytest

from multiterm.core.events import EventKind
from multiterm.core.models import DisplaySize, SocketState
from multiterm.core.persistence import PersistedSession
from multiterm.core.session_registry import NO_SESSION


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        self.now += 1.0
        return self.now


@pytest.fixture
def clocked_registry(persistence, bus):
    from multiterm.core.session_registry import SessionRegistry
    return SessionRegistry(persistence, bus, clock=Clock())


@pytest.fixture
def events(bus):
    seen = []
    bus.subscribe(None, seen.append)
    return seen


class TestCreate:
    """Test suite for session creation."""

    def test_create_sets_defaults_and_activates(self, registry, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)
        record = registry.get(key)

        assert key.startswith("conn-3-session-9-")
        assert record.socket_state is SocketState.IDLE
        assert record.reconnect_attempts == 0
        assert registry.active_key == key
        assert registry.last_created_key == key

    def test_pending_session_key(self, registry, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3)

        assert key.startswith("conn-3-session-pending-")

    def test_duplicate_pair_returns_existing_record(self, registry, ssh_descriptor):
        first = registry.create(ssh_descriptor, 3, 9)
        other = registry.create(ssh_descriptor, 4, 1)

        again = registry.create(ssh_descriptor, 3, 9)

        assert again == first
        assert len(registry) == 2
        assert registry.active_key == first

    def test_duplicate_pair_matches_across_id_types(self, registry, ssh_descriptor):
        first = registry.create(ssh_descriptor, 3, 9)

        assert registry.create(ssh_descriptor, "3", "9") == first

    def test_pending_sessions_never_deduplicate(self, registry, ssh_descriptor):
        a = registry.create(ssh_descriptor, 3)
        b = registry.create(ssh_descriptor, 3)

        assert a != b
        assert len(registry) == 2

    def test_same_millisecond_keys_stay_unique(self, persistence, bus, ssh_descriptor):
        from multiterm.core.session_registry import SessionRegistry
        registry = SessionRegistry(persistence, bus, clock=lambda: 1000.0)

        a = registry.create(ssh_descriptor, 3)
        b = registry.create(ssh_descriptor, 3)

        assert a != b

    def test_create_clears_all_closed_and_closed_log(self, registry, persistence, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)
        registry.close(key)
        assert persistence.all_closed()
        assert persistence.was_closed(3, 9)

        registry.create(ssh_descriptor, 3, 9)

        assert not persistence.all_closed()
        assert not persistence.was_closed(3, 9)

    def test_create_publishes_added_then_activated(self, registry, events, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)

        assert [e.kind for e in events] == [EventKind.SESSION_ADDED, EventKind.SESSION_ACTIVATED]
        assert events[0].remote_session_id == 9
        assert events[1].key == key
        assert events[1].previous_key == NO_SESSION

    def test_create_persists_snapshot(self, registry, persistence, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)

        snapshot = persistence.load_snapshot()

        assert [s.key for s in snapshot.sessions] == [key]
        assert snapshot.active_key == key


class TestUpdate:
    """Test suite for record updates."""

    def test_update_merges_fields(self, registry, events, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)

        registry.update(key, socket_state=SocketState.OPEN, measured_latency_ms=12.5)

        record = registry.get(key)
        assert record.socket_state is SocketState.OPEN
        assert record.measured_latency_ms == 12.5
        assert events[-1].kind is EventKind.SESSION_UPDATED
        assert set(events[-1].fields) == {"socket_state", "measured_latency_ms"}

    def test_update_unknown_key_is_noop(self, registry, events):
        state = registry.update("missing", socket_state=SocketState.OPEN)

        assert len(state.sessions) == 0
        assert events == []
        assert registry.stats["missing_key_operations"] == 1

    def test_update_rejects_immutable_fields(self, registry, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)

        with pytest.raises(ValueError):
            registry.update(key, remote_connection_id=4)
        with pytest.raises(ValueError):
            registry.update(key, bogus=True)

    def test_assigning_session_id_cannot_duplicate_pair(self, registry, ssh_descriptor):
        registry.create(ssh_descriptor, 3, 9)
        pending = registry.create(ssh_descriptor, 3)

        with pytest.raises(ValueError):
            registry.update(pending, remote_session_id=9)

    def test_persisted_display_size(self, registry, persistence, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)
        registry.update(key, display_size=DisplaySize(120, 40))

        persisted = persistence.load_snapshot().find(key)

        assert (persisted.display_cols, persisted.display_rows) == (120, 40)


class TestClose:
    """Test suite for closing sessions."""

    def test_close_calls_teardown_before_removal(self, registry, ssh_descriptor):
        seen = []
        registry.teardown = lambda record: seen.append(record.key in registry)
        key = registry.create(ssh_descriptor, 3, 9)

        registry.close(key)

        assert seen == [True]
        assert key not in registry

    def test_close_is_idempotent(self, registry, ssh_descriptor):
        teardown = Mock()
        registry.teardown = teardown
        key = registry.create(ssh_descriptor, 3, 9)

        first = registry.close(key)
        second = registry.close(key)

        assert teardown.call_count == 1
        assert first == second

    def test_closing_active_selects_most_recent(self, clocked_registry, ssh_descriptor):
        a = clocked_registry.create(ssh_descriptor, 1, 1)
        b = clocked_registry.create(ssh_descriptor, 2, 2)
        c = clocked_registry.create(ssh_descriptor, 3, 3)
        clocked_registry.set_active(a)

        clocked_registry.close(a)
        assert clocked_registry.active_key == c

        clocked_registry.close(c)
        assert clocked_registry.active_key == b

    def test_closing_inactive_keeps_active(self, clocked_registry, ssh_descriptor):
        a = clocked_registry.create(ssh_descriptor, 1, 1)
        b = clocked_registry.create(ssh_descriptor, 2, 2)

        clocked_registry.close(a)

        assert clocked_registry.active_key == b

    def test_closing_last_sets_sentinel_and_flag(self, registry, persistence, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)

        registry.close(key)

        assert registry.active_key == NO_SESSION
        assert registry.active_record is None
        assert persistence.all_closed()
        assert persistence.load_snapshot() is None or persistence.load_snapshot().sessions == []

    def test_close_forgets_last_created(self, registry, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)

        registry.close(key)

        assert registry.last_created_key is None

    def test_close_publishes_closed_and_activated(self, registry, events, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)
        events.clear()

        registry.close(key)

        assert [e.kind for e in events] == [EventKind.SESSION_CLOSED, EventKind.SESSION_ACTIVATED]
        assert events[1].key == NO_SESSION

    def test_close_drops_queued_messages(self, registry, ssh_descriptor):
        key = registry.create(ssh_descriptor, 3, 9)
        record = registry.get(key)
        record.inbound_queue.append("pending output")

        registry.close(key)

        assert len(record.inbound_queue) == 0

    def test_clear_all(self, registry, persistence, events, ssh_descriptor):
        teardown = Mock()
        registry.teardown = teardown
        registry.create(ssh_descriptor, 1, 1)
        registry.create(ssh_descriptor, 2, 2)
        events.clear()

        registry.clear_all()

        assert len(registry) == 0
        assert teardown.call_count == 2
        assert registry.active_key == NO_SESSION
        assert persistence.all_closed()
        assert persistence.load_snapshot() is None
        assert [e.kind for e in events].count(EventKind.SESSION_CLOSED) == 2


class TestActivation:
    """Test suite for active-session tracking."""

    def test_set_active(self, registry, events, ssh_descriptor):
        a = registry.create(ssh_descriptor, 1, 1)
        registry.create(ssh_descriptor, 2, 2)
        events.clear()

        registry.set_active(a)

        assert registry.active_key == a
        assert [e.kind for e in events] == [EventKind.SESSION_ACTIVATED]

    def test_set_active_same_or_unknown_is_noop(self, registry, events, ssh_descriptor):
        a = registry.create(ssh_descriptor, 1, 1)
        events.clear()

        registry.set_active(a)
        registry.set_active("missing")

        assert events == []
        assert registry.active_key == a


class TestRestore:
    """Test suite for snapshot restore."""

    def _persisted(self, descriptor, key="conn-3-session-9-5000", sid=9, created_at=5.0):
        return PersistedSession(
            key=key,
            remote_connection_id=3,
            remote_session_id=sid,
            descriptor=descriptor,
            created_at=created_at,
            socket_state=SocketState.OPEN,
            display_cols=100,
            display_rows=30,
        )

    def test_restore_keeps_key_and_resets_socket(self, registry, ssh_descriptor):
        key = registry.restore(self._persisted(ssh_descriptor))
        record = registry.get(key)

        assert key == "conn-3-session-9-5000"
        assert record.socket_state is SocketState.IDLE
        assert record.display_size == DisplaySize(100, 30)
        assert record.created_at == 5.0

    def test_restore_does_not_activate_or_clear_flag(self, registry, persistence, ssh_descriptor):
        persistence.mark_all_closed()

        registry.restore(self._persisted(ssh_descriptor))

        assert registry.active_key == NO_SESSION
        assert persistence.all_closed()

    def test_restore_deduplicates(self, registry, ssh_descriptor):
        existing = registry.create(ssh_descriptor, 3, 9)

        assert registry.restore(self._persisted(ssh_descriptor)) == existing
        assert len(registry) == 1

    def test_restore_tracks_newest_as_last_created(self, registry, ssh_descriptor):
        registry.restore(self._persisted(ssh_descriptor, key="old", sid=1, created_at=1.0))
        registry.restore(self._persisted(ssh_descriptor, key="new", sid=2, created_at=2.0))

        assert registry.last_created_key == "new"
