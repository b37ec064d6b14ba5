"""Bounded-concurrency processing of independent work units.

Units run on at most ``concurrency`` workers at once, but outcomes are
yielded strictly in submission order so the event stream a caller sees is
the same as sequential processing would produce.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from agent_engine.core.errors import RunCancelledError

U = TypeVar("U")
R = TypeVar("R")


@dataclass
class UnitOutcome(Generic[U, R]):
    index: int
    unit: U
    result: R | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def process_units(
    units: Sequence[U],
    worker: Callable[[int, U], Awaitable[R]],
    *,
    concurrency: int = 4,
) -> AsyncIterator[UnitOutcome[U, R]]:
    """
    Run ``worker`` over ``units`` and yield outcomes in submission order.

    A worker exception is captured on its outcome rather than raised, except
    cancellation which stops the whole batch.

    Args:
        units: Work units, in the order results must be reported
        worker: Coroutine receiving (index, unit)
        concurrency: Maximum simultaneously running workers

    Yields:
        UnitOutcome for each unit, index 0 first
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(index: int, unit: U) -> UnitOutcome[U, R]:
        async with semaphore:
            try:
                return UnitOutcome(index=index, unit=unit, result=await worker(index, unit))
            except (RunCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                return UnitOutcome(index=index, unit=unit, error=e)

    tasks = [asyncio.create_task(_run(i, unit)) for i, unit in enumerate(units)]
    try:
        for task in tasks:
            yield await task
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
