"""
Test configuration and fixtures.

Fixes import paths and provides shared test fixtures: in-memory sockets,
a scriptable socket factory, and a fully wired session core.
"""

import asyncio
import json
import sys
import time
from pathlib import Path

import pytest

# Add repository root to path for imports
repo_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(repo_root))

from multiterm.core.connection_manager import ConnectionManager, ReconnectionPolicy
from multiterm.core.event_bus import EventBus
from multiterm.core.lock_table import LockTable
from multiterm.core.message_pipeline import MessagePipeline
from multiterm.core.models import ConnectionDescriptor
from multiterm.core.persistence import MemoryStore, SessionPersistence
from multiterm.core.session_registry import SessionRegistry
from multiterm.core.transport import SocketClosedError


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests over in-memory sockets")


class FakeSocket:
    """In-memory TerminalSocket."""

    def __init__(self, url=""):
        self.url = url
        self.sent = []
        self.closed = False
        self._inbox = asyncio.Queue()

    async def send(self, message):
        if self.closed:
            raise SocketClosedError(1006, "closed")
        self.sent.append(message)

    async def recv(self):
        item = await self._inbox.get()
        if isinstance(item, SocketClosedError):
            self.closed = True
            raise item
        return item

    async def close(self, code=1000, reason=""):
        self.closed = True

    # Test controls

    def push(self, message):
        self._inbox.put_nowait(message)

    def drop(self, code=1006):
        self._inbox.put_nowait(SocketClosedError(code, "dropped"))

    def frames(self, frame_type=None):
        """Decoded JSON frames sent on this socket, optionally filtered by type."""
        decoded = []
        for message in self.sent:
            if isinstance(message, str) and message.startswith("{"):
                frame = json.loads(message)
                if frame_type is None or frame.get("type") == frame_type:
                    decoded.append(frame)
        return decoded


class FakeSocketFactory:
    """
    Socket factory that fails according to a script, then succeeds.

    `outcomes` holds exceptions raised by successive calls; once it is
    exhausted every call returns a new FakeSocket. Setting `gate` to an
    asyncio.Event holds every call until the event is set.
    """

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.sockets = []
        self.gate = None

    async def __call__(self, url, timeout):
        self.calls.append(url)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.outcomes:
            raise self.outcomes.pop(0)
        socket = FakeSocket(url)
        self.sockets.append(socket)
        return socket

    @property
    def last(self):
        return self.sockets[-1]


async def _wait_until(predicate, timeout=2.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Async helper: await wait_until(lambda: condition)."""
    return _wait_until


@pytest.fixture
def ssh_descriptor():
    return ConnectionDescriptor(protocol="ssh", host="10.0.0.5", port=22, name="build box", username="deploy")


@pytest.fixture
def rdp_descriptor():
    return ConnectionDescriptor(protocol="rdp", host="10.0.0.9", port=3389, name="desktop")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def persistence(store):
    return SessionPersistence(store)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry(persistence, bus):
    return SessionRegistry(persistence, bus)


@pytest.fixture
def socket_factory():
    return FakeSocketFactory()


@pytest.fixture
def policy():
    return ReconnectionPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter_factor=0.0)


@pytest.fixture
def manager(registry, bus, persistence, policy, socket_factory):
    return ConnectionManager(
        registry,
        bus,
        persistence,
        policy=policy,
        locks=LockTable(ttl=5.0),
        socket_factory=socket_factory,
        token_provider=lambda: "secret-token",
        heartbeat_interval=60.0,
    )


@pytest.fixture
def pipeline(registry, bus, manager):
    return MessagePipeline(registry, bus, manager)


@pytest.fixture
def fake_socket_cls():
    return FakeSocket


@pytest.fixture
def factory_cls():
    return FakeSocketFactory
