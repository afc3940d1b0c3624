"""
runner.py - Bounded-concurrency map over a list of units.

A fixed pool of min(concurrency, len(items)) workers pulls the next
unclaimed index from a shared cursor until none remain, so a worker stuck
on a slow unit never leaves the others idle. results[i] always belongs to
items[i] whatever order the units finish in.

Every worker sleeps pacing_delay seconds before each unit after its
first. Pacing is per worker, not global: total request rate grows with
concurrency.

The cursor and result writes never await, so workers sharing one event
loop cannot interleave inside them and no lock is needed.
"""

import asyncio
import math
from typing import Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def validate_concurrency(concurrency) -> int:
    """Return the worker cap for concurrency, or raise ValueError."""
    if isinstance(concurrency, bool) or not isinstance(concurrency, (int, float)):
        raise ValueError(f"Concurrency must be a positive number. Received: {concurrency!r}")
    if not math.isfinite(concurrency) or concurrency <= 0:
        raise ValueError(f"Concurrency must be a positive number. Received: {concurrency!r}")
    return max(1, math.floor(concurrency))


async def map_with_concurrency(
    items: Sequence[T],
    concurrency: int,
    handler: Callable[[T, int], Awaitable[R]],
    *,
    pacing_delay: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> list[R]:
    """
    Apply an async handler to every item with at most `concurrency` in flight.

    Args:
        items: Units to process
        concurrency: Maximum number of concurrent workers (finite, > 0)
        handler: async handler(item, index) -> result; expected to turn
            its own failures into a result rather than raise
        pacing_delay: Seconds each worker waits before its 2nd and later units
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Results in input order

    Raises:
        ValueError: If concurrency is not a finite positive number (before any handler runs)
    """
    limit = validate_concurrency(concurrency)
    items = list(items)
    if not items:
        return []

    results: list = [None] * len(items)
    worker_count = min(limit, len(items))
    cursor = 0

    async def worker() -> None:
        nonlocal cursor
        claimed = 0
        while cursor < len(items):
            index = cursor
            cursor += 1
            if claimed > 0 and pacing_delay > 0:
                await sleep(pacing_delay)
            claimed += 1
            results[index] = await handler(items[index], index)

    tasks = [asyncio.ensure_future(worker()) for _ in range(worker_count)]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        # A handler broke its contract; stop the remaining workers
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    return results
