"""
Per-user State Store - narrow interface over process-local per-user state.

Pending interactive requests, single-flight locks and the ledger's
read-check-decrement serialization all go through this interface so the
backing store can be swapped for a shared one without touching the
orchestration logic.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Generic, Protocol, TypeVar

T = TypeVar("T")


class UserStateStore(Protocol[T]):
    """Keyed-by-user state with a per-user mutual-exclusion region."""

    def get(self, user_id: int) -> T | None:
        ...

    def set(self, user_id: int, value: T) -> T | None:
        """Store value, returning the value it replaced (if any)."""
        ...

    def delete(self, user_id: int) -> T | None:
        ...

    def with_lock(self, user_id: int) -> AbstractAsyncContextManager[None]:
        ...


class InMemoryUserStateStore(Generic[T]):
    """
    Process-local implementation backed by dicts.

    Locks are created lazily and dropped once no task holds or waits on
    them, so the lock map does not grow with the number of users seen.
    """

    def __init__(self) -> None:
        self._values: dict[int, T] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._waiters: dict[int, int] = {}

    def get(self, user_id: int) -> T | None:
        return self._values.get(user_id)

    def set(self, user_id: int, value: T) -> T | None:
        previous = self._values.get(user_id)
        self._values[user_id] = value
        return previous

    def delete(self, user_id: int) -> T | None:
        return self._values.pop(user_id, None)

    def __contains__(self, user_id: int) -> bool:
        return user_id in self._values

    def __len__(self) -> int:
        return len(self._values)

    def is_locked(self, user_id: int) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def with_lock(self, user_id: int) -> AsyncIterator[None]:
        """Hold the user's mutual-exclusion region for the duration of the block."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[user_id] -= 1
            if self._waiters[user_id] == 0:
                del self._waiters[user_id]
                self._locks.pop(user_id, None)
