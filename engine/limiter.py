"""Bounded concurrency for asyncio tasks."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


class Limiter:
    """Run at most ``max_concurrency`` coroutines at once.

    Callers beyond the limit wait in FIFO order. A finished task hands its slot
    directly to the oldest waiter, so a late caller can never overtake a queued
    one. Each caller receives only its own result or exception.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = int(max_concurrency)
        self._active = 0
        self._waiters: deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self._acquire()
        try:
            return await fn(*args, **kwargs)
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._active < self.max_concurrency and not self._waiters:
            self._active += 1
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was handed over just before cancellation; pass it on.
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
                # Slot transfers to the waiter; the active count is unchanged.
                waiter.set_result(None)
                return
        self._active -= 1
