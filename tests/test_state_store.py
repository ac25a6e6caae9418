"""
Tests for the in-memory per-user state store.
"""

import asyncio

from promind.services.state_store import InMemoryUserStateStore


class TestValues:
    """Tests for get/set/delete."""

    def test_set_returns_previous(self):
        store: InMemoryUserStateStore[str] = InMemoryUserStateStore()
        assert store.set(1, "a") is None
        assert store.set(1, "b") == "a"
        assert store.get(1) == "b"

    def test_delete(self):
        store: InMemoryUserStateStore[str] = InMemoryUserStateStore()
        store.set(1, "a")
        assert store.delete(1) == "a"
        assert store.delete(1) is None
        assert 1 not in store
        assert len(store) == 0

    def test_users_are_independent(self):
        store: InMemoryUserStateStore[int] = InMemoryUserStateStore()
        store.set(1, 10)
        store.set(2, 20)
        assert store.get(1) == 10
        assert store.get(2) == 20


class TestLocks:
    """Tests for the per-user mutual exclusion region."""

    async def test_same_user_is_serialized(self):
        store: InMemoryUserStateStore[None] = InMemoryUserStateStore()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with store.with_lock(1):
                order.append(f"{name}-enter")
                await asyncio.sleep(0)
                order.append(f"{name}-exit")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-enter", "a-exit", "b-enter", "b-exit"]

    async def test_different_users_interleave(self):
        store: InMemoryUserStateStore[None] = InMemoryUserStateStore()
        order: list[str] = []

        async def worker(user_id: int) -> None:
            async with store.with_lock(user_id):
                order.append(f"{user_id}-enter")
                await asyncio.sleep(0)
                order.append(f"{user_id}-exit")

        await asyncio.gather(worker(1), worker(2))

        assert order[:2] == ["1-enter", "2-enter"]

    async def test_lock_released_after_error(self):
        store: InMemoryUserStateStore[None] = InMemoryUserStateStore()

        try:
            async with store.with_lock(1):
                raise RuntimeError("boom")
        except RuntimeError:
            pass

        assert store.is_locked(1) is False
        async with store.with_lock(1):
            assert store.is_locked(1) is True

    async def test_unused_locks_are_dropped(self):
        store: InMemoryUserStateStore[None] = InMemoryUserStateStore()
        for user_id in range(100):
            async with store.with_lock(user_id):
                pass
        assert store._locks == {}
