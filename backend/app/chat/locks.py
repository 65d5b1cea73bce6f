"""Per-aggregate serialization for conversations and messages.

Each conversation id and each message id maps to its own asyncio.Lock, so
operations on different aggregates run fully in parallel while operations
on the same aggregate queue behind each other. Locks are created on demand
and dropped once no task holds or waits on them.

Lock order: a conversation lock may be taken before a message lock, never
the other way round.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLocks:
    """A lazily populated map of key -> asyncio.Lock with reference counting."""

    def __init__(self, name: str = "aggregate") -> None:
        self.name = name
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
