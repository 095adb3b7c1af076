"""
Keyed asyncio locks shared by every orchestrator in the process.
"""

import asyncio
from collections.abc import Hashable


class KeyedLocks:
    """Hands out one ``asyncio.Lock`` per key, creating it on first use."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def __call__(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks.setdefault(key, asyncio.Lock())
        return lock

    def discard(self, key: Hashable) -> None:
        """Forget the lock for ``key`` unless someone is holding it."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


# Per pipeline configuration: serializes number claims
numbering_locks = KeyedLocks()

# Per pipeline instance: serializes lifecycle transitions
instance_locks = KeyedLocks()
