"""Bounded-concurrency batch execution with an inter-batch delay."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def process_in_batches(
    items: Sequence[T],
    batch_size: int,
    inter_batch_delay_ms: int,
    task: Callable[[T, int], Awaitable[R]],
    on_batch_complete: Optional[Callable[[], None]] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> List[R]:
    """Run ``task(item, index)`` over ``items``, ``batch_size`` at a time.

    Each batch runs concurrently and must settle before the next starts.
    Results keep the input order. A task exception propagates to the caller
    once the rest of its batch has been cancelled and awaited.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    results: List[Optional[R]] = [None] * len(items)
    delay = inter_batch_delay_ms / 1000.0

    async def run(item: T, index: int) -> None:
        results[index] = await task(item, index)

    for start in range(0, len(items), batch_size):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        batch = items[start : start + batch_size]
        logger.debug("Running batch at %d (%d items)", start, len(batch))
        tasks = [asyncio.create_task(run(item, start + offset)) for offset, item in enumerate(batch)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # no call of a failed batch may outlive it
            for pending in tasks:
                pending.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        if on_batch_complete is not None:
            on_batch_complete()

        if start + batch_size < len(items):
            if cancel_token is not None:
                await cancel_token.sleep(delay)
            else:
                await asyncio.sleep(delay)

    return results  # type: ignore[return-value]
