"""
Concurrent fan-out helpers.
"""
import asyncio
from typing import Awaitable, List, TypeVar

T = TypeVar("T")


async def gather_or_cancel(*aws: Awaitable[T]) -> List[T]:
    """
    Run ``aws`` concurrently and return their results in order.

    Unlike a bare ``asyncio.gather``, the first failure cancels every sibling
    that is still running and waits for them to finish before the error is
    raised, so no provider call or lookup outlives the caller.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
