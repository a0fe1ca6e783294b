"""Admission gate bounding how many tasks run against the backend at once."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

# The backend only processes one generation at a time
DEFAULT_PERMITS = 1


class AdmissionGate:
    """A counting permit with FIFO wake-up of waiters.

    Use ``permit()`` rather than pairing ``acquire``/``release`` by hand so
    the permit is returned on every exit path, including cancellation.
    """

    def __init__(self, limit: int = DEFAULT_PERMITS) -> None:
        if limit < 1:
            raise ValueError("AdmissionGate limit must be at least 1")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._held = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def available(self) -> int:
        return self._limit - self._held

    def locked(self) -> bool:
        return self._held >= self._limit

    async def acquire(self) -> None:
        """Wait for a permit, then take it."""
        await self._semaphore.acquire()
        self._held += 1

    def release(self) -> None:
        """Return a permit, waking the longest waiter if there is one."""
        if self._held == 0:
            raise ValueError("AdmissionGate released more times than acquired")
        self._held -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()
