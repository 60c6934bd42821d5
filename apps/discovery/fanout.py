# apps/discovery/fanout.py
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")


async def gather_or_cancel(aws: Iterable[Awaitable[T]]) -> List[T]:
    """Await all in order; on the first failure cancel the siblings before re-raising."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def bounded(
    semaphore: Optional[asyncio.Semaphore],
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    # the call is created only once a slot is held
    if semaphore is None:
        return await fn(*args, **kwargs)
    async with semaphore:
        return await fn(*args, **kwargs)
