"""Bounded-concurrency admission queue for outgoing requests."""

from __future__ import annotations

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Deque, TypeVar

T = TypeVar("T")


class AdmissionQueue:
    """Admits at most ``max_concurrent`` callers; the rest wait in FIFO order.

    A released slot is handed straight to the oldest waiter, so the running
    counter only drops when nobody is queued.
    """

    def __init__(self, max_concurrent: int = 5) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max_concurrent = max_concurrent
        self._running = 0
        self._waiters: Deque[asyncio.Future[None]] = deque()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self._acquire()
        try:
            yield
        finally:
            self._release()

    async def run(self, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.slot():
            return await fn()

    async def _acquire(self) -> None:
        if self._running < self._max_concurrent and not self._waiters:
            self._running += 1
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before the cancellation landed.
                self._release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._running -= 1
