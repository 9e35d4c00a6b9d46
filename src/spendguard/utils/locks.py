"""Concurrency control utilities for spend operations.

Provides per-key locking so that the read-check-write sequence of an
authorization runs exclusively per card, wallet or idempotency key.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLock:
    """Registry of asyncio locks keyed by an arbitrary hashable value.

    Example:
        locks = KeyedLock(timeout=10.0)
        async with locks.hold(("card", card_id), operation="authorize"):
            # Check limits and reserve spend
            ...
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        """Initialize the registry.

        Args:
            timeout: Maximum time to wait for a lock (None = wait forever)
        """
        self.timeout = timeout
        self._locks: dict[Hashable, asyncio.Lock] = {}
        # Holders plus waiters per key; the entry is dropped at zero
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable, operation: str = "operation") -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1

        try:
            try:
                if self.timeout:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
                else:
                    await lock.acquire()
            except asyncio.TimeoutError:
                logger.warning(f"Lock timeout for {key} after {self.timeout}s: {operation}")
                raise LockTimeoutError(f"Could not acquire lock for {key} within {self.timeout}s")

            logger.debug(f"Lock acquired for {key}: {operation}")
            try:
                yield
            finally:
                lock.release()
                logger.debug(f"Lock released for {key}: {operation}")
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
