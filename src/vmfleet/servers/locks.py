"""Per-record mutual exclusion for mutating lifecycle operations."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class RecordLockArena:
    """Hands out one :class:`asyncio.Lock` per record id.

    Locks are reference counted and dropped once no task holds or waits
    for them, so the arena does not grow with the number of records ever
    touched.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def locked(self, record_id: str) -> bool:
        lock = self._locks.get(record_id)
        return lock is not None and lock.locked()

    @contextlib.asynccontextmanager
    async def hold(self, record_id: str) -> AsyncIterator[None]:
        """Serialize the enclosed block with every other holder of *record_id*."""
        lock = self._locks.setdefault(record_id, asyncio.Lock())
        self._users[record_id] = self._users.get(record_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[record_id] -= 1
            if self._users[record_id] == 0:
                del self._users[record_id]
                del self._locks[record_id]
