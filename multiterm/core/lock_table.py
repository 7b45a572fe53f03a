"""
Lock Table - TTL-bound duplicate-connect suppression.

In-process counterpart of the SET NX EX lock used for reconnections: an
entry per (remote connection id, remote session id) that expires on its
own, so an attempt that never releases its lock cannot block the pair
forever.

The runtime is a single asyncio loop, so the table is advisory rather
than a mutex; check-and-insert happens in one step with no await between.

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

__all__ = ["LockTable"]


class LockTable:
    """Short-lived mutual-exclusion markers with automatic expiry."""

    __slots__ = ("ttl", "_clock", "_entries")

    def __init__(self, ttl: float = 5.0, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            ttl: Seconds before an unreleased entry expires (default: 5s)
            clock: Monotonic time source, injectable for tests
        """
        self.ttl = ttl
        self._clock = clock or time.monotonic
        self._entries: Dict[Hashable, float] = {}

    def acquire(self, lock_key: Hashable, ttl: Optional[float] = None) -> bool:
        """
        Insert an entry unless a live one exists.

        Returns:
            True if the caller now holds the lock, False if it is taken
        """
        now = self._clock()
        expires_at = self._entries.get(lock_key)
        if expires_at is not None and expires_at > now:
            return False
        if expires_at is not None:
            logger.debug(f"Lock {lock_key} expired without release, taking over")
        self._entries[lock_key] = now + (self.ttl if ttl is None else ttl)
        return True

    def release(self, lock_key: Hashable) -> None:
        self._entries.pop(lock_key, None)

    def is_locked(self, lock_key: Hashable) -> bool:
        expires_at = self._entries.get(lock_key)
        return expires_at is not None and expires_at > self._clock()

    def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [k for k, exp in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return sum(1 for exp in self._entries.values() if exp > self._clock())
