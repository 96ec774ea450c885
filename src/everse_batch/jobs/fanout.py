"""Bounded concurrent fan-out over batch work units."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

ItemT = TypeVar("ItemT")
ResultT = TypeVar("ResultT")


async def bounded_gather(
    items: Iterable[ItemT],
    worker: Callable[[ItemT], Awaitable[ResultT]],
    limit: int,
) -> list[ResultT | BaseException]:
    """Run worker over every item with at most ``limit`` in flight.

    Waits for every unit to finish. A unit's exception is returned in its
    result slot instead of being raised, so siblings keep running.

    Args:
        items: Work units, typically one per tenant.
        worker: Coroutine function processing one unit.
        limit: Maximum concurrently running units.

    Returns:
        Results (or exceptions) in the same order as items.
    """
    if limit < 1:
        raise ValueError("limit must be at least 1")
    semaphore = asyncio.Semaphore(limit)

    async def _run(item: ItemT) -> ResultT:
        async with semaphore:
            return await worker(item)

    return await asyncio.gather(*(_run(item) for item in items), return_exceptions=True)
