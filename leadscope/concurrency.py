"""Process-wide crawl slot pool."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Deque


class CrawlSlotPool:
    """Fixed number of crawl slots; waiters are woken oldest first.

    A released slot is handed straight to the oldest waiter, so a crawl that
    arrives later never takes it first. ``active`` and ``peak`` are
    instrumentation for the slot-count invariant.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("slot pool size must be at least 1")
        self.size = size
        self._free = size
        self._waiters: Deque[asyncio.Future] = deque()
        self.active = 0
        self.peak = 0

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def _acquire(self) -> None:
        if self._free > 0 and not self._waiters:
            self._free -= 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # the slot was handed over just before the cancellation
                self._release()
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._free += 1

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self._acquire()
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            yield
        finally:
            self.active -= 1
            self._release()
