from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, TypeVar

from automaker_sdk.core.cancellation import CancellationToken

T = TypeVar("T")


async def collect(source: AsyncIterator[T]) -> list[T]:
    """Drain an async iterator into a list."""
    return [item async for item in source]


async def iterate_until_cancelled(
    source: AsyncIterator[T], token: CancellationToken | None
) -> AsyncIterator[T]:
    """Yield from *source* until it is exhausted or *token* is cancelled.

    Each pending ``__anext__`` is raced against the token, so a backend that
    is blocked waiting for output is interrupted as soon as cancellation is
    requested.  The caller remains responsible for closing *source*.
    """
    if token is None:
        async for item in source:
            yield item
        return

    async def _next() -> T:
        return await source.__anext__()

    waiter = asyncio.ensure_future(token.wait())
    try:
        while not token.cancelled:
            pending = asyncio.ensure_future(_next())
            done, _ = await asyncio.wait(
                {pending, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            if pending not in done:
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await pending
                return
            try:
                item = pending.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        waiter.cancel()
