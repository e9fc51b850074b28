from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ConcurrencyLimiter:
    """Bounded slot pool for concurrent capability execution.

    Waiting for a slot suspends only the calling task. ``in_flight`` and
    ``peak`` are exposed so tests can assert the limit is never exceeded.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("concurrency limit must be >= 1")
        self._limit = limit
        self._sem = asyncio.Semaphore(limit)
        self._in_flight = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def peak(self) -> int:
        return self._peak

    async def acquire(self) -> None:
        await self._sem.acquire()
        self._in_flight += 1
        self._peak = max(self._peak, self._in_flight)

    def release(self) -> None:
        if self._in_flight <= 0:
            raise RuntimeError("release() called without a held slot")
        self._in_flight -= 1
        self._sem.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()
