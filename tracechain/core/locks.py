"""
In-process per-entity serialization.

RegistryService holds an entity's lock from the moment it loads the entity
until its transaction commits, so mutations of one entity apply one at a time
while different entities proceed in parallel. Registration additionally takes
the batch-key lock so that uniqueness checks and inserts cannot interleave.

Row locks (SELECT ... FOR UPDATE) and primary-key constraints back this up at
the database level for multi-process deployments.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager


class EntityLockRegistry:
    """asyncio.Lock per entity id, created on demand and evicted when idle."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._waiters: dict[int, int] = {}
        self.batch_key_lock = asyncio.Lock()
        self.registry_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def entity(self, entity_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(entity_id)
        if lock is None:
            lock = self._locks[entity_id] = asyncio.Lock()
        self._waiters[entity_id] = self._waiters.get(entity_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[entity_id] -= 1
            if self._waiters[entity_id] == 0:
                del self._waiters[entity_id]
                del self._locks[entity_id]

    @asynccontextmanager
    async def entities(self, entity_ids: Iterable[int]) -> AsyncIterator[None]:
        """Hold several entity locks, always acquired in ascending id order."""
        async with AsyncExitStack() as stack:
            for entity_id in sorted(set(entity_ids)):
                await stack.enter_async_context(self.entity(entity_id))
            yield

    @asynccontextmanager
    async def batch_keys(self) -> AsyncIterator[None]:
        async with self.batch_key_lock:
            yield
