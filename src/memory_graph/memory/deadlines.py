from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional, TypeVar

from memory_graph.errors import StoreTimeout, UpstreamTimeout

T = TypeVar("T")


async def call_provider(awaitable: Awaitable[T], provider: str, timeout: Optional[float]) -> T:
    """Await a provider call, converting a missed deadline into UpstreamTimeout."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise UpstreamTimeout(provider, timeout) from exc


async def read_store(awaitable: Awaitable[T], operation: str, timeout: Optional[float]) -> T:
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        raise StoreTimeout(operation, timeout) from exc


async def gather_or_cancel(*awaitables: Awaitable[Any]) -> List[Any]:
    """Like ``asyncio.gather`` but cancels the siblings when one fails."""
    tasks = [asyncio.ensure_future(a) for a in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
