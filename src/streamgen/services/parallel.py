"""Bounded-concurrency fan-out over an (async) stream of items."""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from typing import Any, TypeVar

from streamgen.core.exceptions import WorkerError


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def _iterate(items: Iterable[T]) -> AsyncIterator[T]:
    for item in items:
        yield item


def _as_async_iterator(items: AsyncIterable[T] | Iterable[T]) -> AsyncIterator[T]:
    if isinstance(items, AsyncIterable):
        return aiter(items)
    return _iterate(items)


async def _close_source(source: AsyncIterator[Any]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


def _semaphore_for(concurrency: float | None) -> asyncio.Semaphore | None:
    if concurrency is None or math.isinf(concurrency):
        return None
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1, None or math.inf")
    return asyncio.Semaphore(int(concurrency))


async def process_in_parallel(
    items: AsyncIterable[T] | Iterable[T],
    worker: Callable[[T], Awaitable[R] | R],
    concurrency: float | None = None,
) -> list[R]:
    """Run `worker` on every item with at most `concurrency` calls in flight.

    Items are pulled as they arrive, so workers start while the source is
    still producing. Results come back in input order regardless of which
    worker finishes first.

    The first worker failure cancels in-flight workers, closes the source and
    raises `WorkerError` chained to the original exception. An exception from
    the source itself propagates unchanged.
    """
    semaphore = _semaphore_for(concurrency)
    source = _as_async_iterator(items)
    loop = asyncio.get_running_loop()

    results: dict[int, R] = {}
    tasks: list[asyncio.Task[None]] = []
    failure: asyncio.Future[tuple[int, BaseException]] = loop.create_future()

    async def run_one(index: int, item: T) -> None:
        try:
            value = worker(item)
            if inspect.isawaitable(value):
                value = await value
            results[index] = value  # type: ignore[assignment]
        except Exception as exc:
            if not failure.done():
                failure.set_result((index, exc))
        finally:
            if semaphore is not None:
                semaphore.release()

    async def feed() -> None:
        index = 0
        async for item in source:
            if failure.done():
                return
            if semaphore is not None:
                await semaphore.acquire()
            tasks.append(loop.create_task(run_one(index, item)))
            index += 1

    feeder = loop.create_task(feed())
    waiter: asyncio.Future[Any] | None = None
    try:
        await asyncio.wait({feeder, failure}, return_when=asyncio.FIRST_COMPLETED)
        if not failure.done():
            # Re-raises source errors
            feeder.result()
            if tasks:
                waiter = asyncio.gather(*tasks)
                await asyncio.wait(
                    {waiter, failure}, return_when=asyncio.FIRST_COMPLETED
                )

        if failure.done():
            index, exc = failure.result()
            logger.warning("Worker failed for item %d: %s", index, exc)
            raise WorkerError(
                f"Worker failed for item {index}: {exc}", index=index
            ) from exc

        # A worker raising CancelledError ends its task cancelled, not failed
        cancelled = [i for i, task in enumerate(tasks) if task.cancelled()]
        if cancelled:
            if waiter is not None and not waiter.cancelled():
                waiter.exception()
            index = cancelled[0]
            logger.warning("Worker cancelled for item %d", index)
            raise WorkerError(
                f"Worker cancelled for item {index}", index=index
            ) from asyncio.CancelledError()

        return [results[i] for i in range(len(tasks))]
    finally:
        pending = [t for t in (feeder, *tasks) if not t.done()]
        for task in pending:
            task.cancel()
        if waiter is not None and not waiter.done():
            waiter.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await _close_source(source)
