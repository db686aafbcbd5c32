"""Bounded, cancellable fan-out for per-chunk and per-source work."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from braindump.errors import AnalysisCancelled

T = TypeVar("T")
R = TypeVar("R")


def raise_if_cancelled(cancel_event: Optional[asyncio.Event], where: str = "") -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelled(f"Analysis cancelled{f' during {where}' if where else ''}")


async def bounded_gather(
    items: Sequence[T],
    worker: Callable[[int, T], Awaitable[R]],
    max_concurrency: int = 2,
    cancel_event: Optional[asyncio.Event] = None,
) -> list[R]:
    """
    Run `worker(index, item)` for every item with at most `max_concurrency`
    in flight.  Results keep input order.  The cancel event is checked before
    each item starts; the first failure cancels the remaining work.
    """
    if not items:
        return []
    semaphore = asyncio.Semaphore(max(1, max_concurrency))

    async def run(index: int, item: T) -> R:
        async with semaphore:
            raise_if_cancelled(cancel_event, f"item {index + 1}/{len(items)}")
            return await worker(index, item)

    tasks = [asyncio.ensure_future(run(i, item)) for i, item in enumerate(items)]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
