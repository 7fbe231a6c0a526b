"""Bounded fan-out over independent per-entity work"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(items: Iterable[T], worker: Callable[[T], Awaitable[R]], limit: int) -> List[R]:
    """
    Run worker over items with at most `limit` in flight, preserving order.

    If one worker raises or the caller is cancelled, the remaining workers
    are cancelled and awaited before the error propagates.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _guarded(item: T) -> R:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(_guarded(item)) for item in items]
    if not tasks:
        return []

    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
