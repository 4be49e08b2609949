"""Batch-and-delay launching, so thousands of clients do not hit the broker at once."""

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

log = logging.getLogger("inflightbench.launcher")

T = TypeVar("T")
R = TypeVar("R")


async def launch_in_batches(items: Sequence[T], start: Callable[[T], Awaitable[R]],
                            batch_size: int = 100, batch_delay: float = 1.0,
                            label: str = "clients") -> list[R | BaseException]:
    """
    Start ``start(item)`` for every item, *batch_size* at a time, sleeping
    *batch_delay* between batches.  Started operations keep running while the
    next batch waits; the result list is in item order and carries the
    exception of any operation that failed.
    """
    batch_size = max(1, batch_size)
    tasks: list[asyncio.Task] = []
    try:
        for i in range(0, len(items), batch_size):
            batch = items[i:i + batch_size]
            tasks.extend(asyncio.ensure_future(start(item)) for item in batch)
            if i + batch_size < len(items):
                log.info("⏳ Started %d/%d %s, waiting %.1fs before next batch...",
                         i + len(batch), len(items), label, batch_delay)
                await asyncio.sleep(batch_delay)
        return await asyncio.gather(*tasks, return_exceptions=True)
    except asyncio.CancelledError:
        for t in tasks:
            t.cancel()
        raise
