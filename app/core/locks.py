"""Per-key mutual exclusion for sandbox lifecycle operations."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, TypeVar

T = TypeVar("T")


class LockRegistry:
    """Table of lazily created locks keyed by resource name.

    Operations holding the same key run one after another in arrival order;
    different keys never wait on each other. A failing operation releases
    its key like a successful one.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Context manager holding the lock for ``key``."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                # Nobody queued behind us: drop the entry so the table stays bounded.
                del self._waiters[key]
                self._locks.pop(key, None)

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` once every earlier operation on ``key`` has settled."""
        async with self.hold(key):
            return await operation()

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
