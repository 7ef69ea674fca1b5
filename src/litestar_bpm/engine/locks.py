"""Per-instance critical sections.

Every mutation of an instance or of one of its tasks runs while holding the
instance's lock, so concurrent branches, task completions and control requests
for the same instance are serialized. Locks are created on demand and dropped
once nobody holds or waits for them.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from uuid import UUID

__all__ = ["InstanceLocks"]


class InstanceLocks:
    """Registry of asyncio locks keyed by instance id.

    The locks are not reentrant: code running under :meth:`hold` must not call
    anything that acquires the same instance lock again.

    Example:
        >>> locks = InstanceLocks()
        >>> async with locks.hold(instance_id):
        ...     ...
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._users: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, instance_id: UUID) -> AsyncIterator[None]:
        """Hold the lock of an instance for the duration of the block.

        Args:
            instance_id: The instance to lock.
        """
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        self._users[instance_id] = self._users.get(instance_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[instance_id] -= 1
            if not self._users[instance_id]:
                del self._users[instance_id]
                del self._locks[instance_id]

    def is_locked(self, instance_id: UUID) -> bool:
        """Whether the lock of an instance is currently held."""
        lock = self._locks.get(instance_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
