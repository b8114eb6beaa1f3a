"""Fixed-capacity asyncio worker pool with back-pressure on submission."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, Tuple, TypeVar

from loguru import logger

T = TypeVar("T")
ItemT = TypeVar("ItemT")

_WorkItem = Optional[Tuple[int, Callable[[], Awaitable[Any]]]]


@dataclass
class WorkOutcome(Generic[T]):
    """Result of one unit of work, in submission order."""

    index: int
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BoundedWorkerPool:
    """Run at most ``capacity`` coroutines at once.

    ``capacity`` workers drain a queue bounded to ``capacity`` pending items, so
    ``submit`` suspends the producer whenever every worker is busy and the queue
    is full. A queued unit starts as soon as a worker frees up. Exceptions are
    captured per unit and never stop the pool.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._queue: asyncio.Queue[_WorkItem] = asyncio.Queue(maxsize=capacity)
        self._workers: list[asyncio.Task[None]] = []
        self._outcomes: list[WorkOutcome[Any]] = []
        self._submitted = 0
        self._active = 0
        self._peak_active = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def peak_active(self) -> int:
        return self._peak_active

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [asyncio.create_task(self._worker()) for _ in range(self._capacity)]

    async def submit(self, factory: Callable[[], Awaitable[T]]) -> int:
        """Queue a unit of work; waits while the pool is saturated."""

        if self._closed:
            raise RuntimeError("pool is closed")
        self.start()
        index = self._submitted
        self._submitted += 1
        await self._queue.put((index, factory))
        return index

    async def join(self) -> List[WorkOutcome[Any]]:
        """Wait for all submitted work, stop the workers and return outcomes."""

        if not self._closed:
            self._closed = True
            self.start()
            for _ in self._workers:
                await self._queue.put(None)
            await asyncio.gather(*self._workers)
        return sorted(self._outcomes, key=lambda outcome: outcome.index)

    async def _worker(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                index, factory = item
                self._active += 1
                self._peak_active = max(self._peak_active, self._active)
                try:
                    value = await factory()
                except Exception as exc:
                    logger.debug("Worker pool unit failed", index=index, error=str(exc))
                    self._outcomes.append(WorkOutcome(index=index, error=exc))
                else:
                    self._outcomes.append(WorkOutcome(index=index, value=value))
                finally:
                    self._active -= 1
            finally:
                self._queue.task_done()

    async def __aenter__(self) -> "BoundedWorkerPool":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.join()
            return
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)


async def run_bounded(
    items: Iterable[ItemT],
    func: Callable[[ItemT], Awaitable[T]],
    *,
    capacity: int,
) -> List[WorkOutcome[T]]:
    """Apply ``func`` to every item with at most ``capacity`` in flight."""

    pool = BoundedWorkerPool(capacity)
    async with pool:
        for item in items:
            await pool.submit(lambda item=item: func(item))
    return await pool.join()


__all__ = ["BoundedWorkerPool", "WorkOutcome", "run_bounded"]
