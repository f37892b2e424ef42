"""
Chunk transfer helpers: a small bounded pool and bounded retries.

Chunks may move concurrently, but results are always addressed by
chunk index, so ordering for checksum purposes never depends on which
transfer finishes first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

from .transport import TransportError

logger = logging.getLogger("memoria_backup.transfer")

T = TypeVar("T")


async def run_bounded(jobs: Sequence[Callable[[], Awaitable[T]]], limit: int) -> list[T]:
    """Run ``jobs`` with at most ``limit`` in flight.

    Results are returned in job order. On the first failure every
    outstanding job is cancelled and the failure is re-raised.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _guarded(job: Callable[[], Awaitable[T]]) -> T:
        async with semaphore:
            return await job()

    tasks = [asyncio.ensure_future(_guarded(job)) for job in jobs]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    delay: float,
    label: str,
) -> T:
    """Call ``operation``, retrying transient transport errors.

    Args:
        operation: Zero-argument coroutine factory.
        max_retries: Retries after the first attempt.
        delay: Seconds to wait between attempts.
        label: Description for log messages.

    Raises:
        TransportError: The last error, once retries are exhausted or
            the error is not transient.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransportError as exc:
            if not exc.transient or attempt >= max_retries:
                raise
            attempt += 1
            logger.warning("%s failed (retry %d/%d): %s", label, attempt, max_retries, exc)
            await asyncio.sleep(delay)
