"""Array streaming pipeline: generate, extract items, fan out to workers.

    partial snapshots (with model fallback)
        -> on_partial_object
        -> extract_items (finished items only)
        -> optional item validation
        -> on_new_item
        -> process_in_parallel(worker)
        -> on_finish(PipelineResult)

`stream_events` exposes the same flow as a sequence of `StreamEvent`s so a
transport (SSE, websocket, queue) can forward it without knowing the
pipeline internals.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import (
    AsyncGenerator,
    AsyncIterator,
    Awaitable,
    Callable,
    Sequence,
)
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from streamgen.core.config import get_settings
from streamgen.core.exceptions import PipelineError, StreamError, WorkerError
from streamgen.core.logging import structured_logger
from streamgen.schemas.generation import (
    GenerationOutcome,
    GenerationRequest,
    ModelAttempt,
    ModelHandle,
    StreamEvent,
)
from streamgen.services.ai.extractor import ArraySelector, extract_items
from streamgen.services.ai.interfaces import RecordStore
from streamgen.services.ai.invoker import MultiModelInvoker
from streamgen.services.parallel import process_in_parallel
from streamgen.services.ready_queue import (
    DrainResult,
    QueuedFunction,
    QueueEntry,
    queued_function,
)


logger = logging.getLogger(__name__)

R = TypeVar("R")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(slots=True)
class PipelineResult(Generic[R]):  # noqa: UP046
    """Worker results in item order plus the outcome of the generation."""

    results: list[R]
    outcome: GenerationOutcome[Any]


@dataclass(slots=True)
class StreamCallbacks:
    """Client hooks; each may be a plain function or a coroutine function."""

    on_partial_object: Callable[[Any], Any] | None = None
    on_new_item: Callable[[Any], Any] | None = None
    on_finish: Callable[[PipelineResult[Any]], Any] | None = None


@dataclass(slots=True)
class _RunState:
    attempts: list[ModelAttempt] = field(default_factory=list)
    last_snapshot: Any = None
    skipped: int = 0


def _coerce_item(item_type: type[BaseModel], item: Any) -> BaseModel:
    if isinstance(item, BaseModel) and not isinstance(item, item_type):
        item = item.model_dump()
    return item_type.model_validate(item)


class ArrayStreamPipeline:
    def __init__(
        self, invoker: MultiModelInvoker, concurrency: float | None = None
    ) -> None:
        self.invoker = invoker
        self.concurrency = (
            concurrency
            if concurrency is not None
            else get_settings().STREAM_CONCURRENCY
        )

    async def _tap(
        self,
        partials: AsyncIterator[Any],
        callbacks: StreamCallbacks,
        state: _RunState,
    ) -> AsyncIterator[Any]:
        try:
            async for snapshot in partials:
                state.last_snapshot = snapshot
                if callbacks.on_partial_object is not None:
                    await _maybe_await(callbacks.on_partial_object(snapshot))
                yield snapshot
        finally:
            aclose = getattr(partials, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _items(
        self,
        request: GenerationRequest,
        models: Sequence[ModelHandle],
        select_array: ArraySelector[Any],
        item_type: type[BaseModel] | None,
        callbacks: StreamCallbacks,
        state: _RunState,
    ) -> AsyncGenerator[Any, None]:
        partials = self._tap(
            self.invoker.stream_partials(request, models, attempts=state.attempts),
            callbacks,
            state,
        )
        items = extract_items(partials, select_array)
        try:
            async for item in items:
                if item_type is not None:
                    try:
                        item = _coerce_item(item_type, item)
                    except ValidationError as exc:
                        state.skipped += 1
                        logger.warning(
                            "Skipping item that failed %s validation: %s",
                            item_type.__name__,
                            exc,
                        )
                        continue
                if callbacks.on_new_item is not None:
                    await _maybe_await(callbacks.on_new_item(item))
                yield item
        finally:
            await items.aclose()

    def iter_items(
        self,
        request: GenerationRequest,
        models: Sequence[ModelHandle],
        select_array: ArraySelector[Any],
        item_type: type[BaseModel] | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> AsyncIterator[Any]:
        """Finished array items as they become available."""
        return self._items(
            request,
            models,
            select_array,
            item_type,
            callbacks or StreamCallbacks(),
            _RunState(),
        )

    async def run(
        self,
        request: GenerationRequest,
        models: Sequence[ModelHandle],
        select_array: ArraySelector[Any],
        worker: Callable[[Any], Awaitable[R] | R],
        *,
        item_type: type[BaseModel] | None = None,
        callbacks: StreamCallbacks | None = None,
        concurrency: float | None = None,
    ) -> PipelineResult[R]:
        """Stream, extract and process every item; then call `on_finish`.

        Raises `StreamError` if the stream fails and `WorkerError` if a worker
        fails; `on_finish` is only called on success.
        """
        callbacks = callbacks or StreamCallbacks()
        state = _RunState()
        items = self._items(request, models, select_array, item_type, callbacks, state)
        results = await process_in_parallel(
            items,
            worker,
            concurrency if concurrency is not None else self.concurrency,
        )

        outcome = self.invoker.finalize(
            request, state.last_snapshot, attempts=state.attempts
        )
        result: PipelineResult[R] = PipelineResult(results=results, outcome=outcome)
        structured_logger.info(
            "Array stream finished",
            items=len(results),
            skipped=state.skipped,
            success=outcome.success,
            model=outcome.model,
        )
        if callbacks.on_finish is not None:
            await _maybe_await(callbacks.on_finish(result))
        return result

    async def stream_events(
        self,
        request: GenerationRequest,
        models: Sequence[ModelHandle],
        select_array: ArraySelector[Any],
        worker: Callable[[Any], Awaitable[Any] | Any] | None = None,
        *,
        item_type: type[BaseModel] | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield one `item` event per item, then `finish` or a terminal `error`.

        Items are processed one at a time so events keep item order. Failures
        are reported as a terminal event instead of being raised.
        """
        callbacks = callbacks or StreamCallbacks()
        state = _RunState()
        items = self._items(request, models, select_array, item_type, callbacks, state)
        index = 0
        try:
            async for item in items:
                data = item
                if worker is not None:
                    try:
                        data = await _maybe_await(worker(item))
                    except Exception as exc:
                        raise WorkerError(
                            f"Worker failed for item {index}: {exc}", index=index
                        ) from exc
                yield StreamEvent.item(index, data)
                index += 1
        except Exception as exc:
            cause = exc.__cause__
            if isinstance(exc, StreamError) and isinstance(cause, PipelineError):
                exc = cause
            logger.exception("Array stream failed after %d item(s)", index)
            yield StreamEvent.from_exception(exc)
            return
        finally:
            await items.aclose()

        outcome = self.invoker.finalize(
            request, state.last_snapshot, attempts=state.attempts
        )
        if callbacks.on_finish is not None:
            await _maybe_await(
                callbacks.on_finish(PipelineResult(results=[], outcome=outcome))
            )
        if not outcome.success and outcome.error is not None:
            yield StreamEvent.terminal_error(
                outcome.error.message, outcome.error.error_code
            )
            return
        yield StreamEvent.finish({"items": index, "model": outcome.model})


class PersistingWorker:
    """Worker that routes `store.upsert` calls through a ready queue.

    Writes are buffered until `is_ready()` allows a drain, then flushed in
    item order. With a predicate that can stay False, configure
    `poll_ready_interval_ms` so buffered writes are retried.
    """

    def __init__(
        self,
        store: RecordStore,
        is_ready: Callable[[], bool] | None = None,
        *,
        ready_throttle_ms: float | None = None,
        poll_ready_interval_ms: float | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.queue: QueuedFunction[Any] = queued_function(
            store.upsert,
            is_ready or (lambda: True),
            ready_throttle_ms=(
                ready_throttle_ms
                if ready_throttle_ms is not None
                else settings.READY_THROTTLE_MS
            ),
            poll_ready_interval_ms=(
                poll_ready_interval_ms
                if poll_ready_interval_ms is not None
                else settings.POLL_READY_INTERVAL_MS
            ),
            before_drain_callback=self._before_drain,
            after_drain_callback=self._after_drain,
        )

    async def __call__(self, record: Any) -> Any:
        return await self.queue(record)

    def close(self) -> None:
        self.queue.close()

    @staticmethod
    def _before_drain(entries: list[QueueEntry[Any]]) -> None:
        logger.debug("Persisting %d buffered record(s)", len(entries))

    @staticmethod
    def _after_drain(results: list[DrainResult[Any]]) -> None:
        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning("%d of %d record write(s) failed", failed, len(results))


def persisting_worker(
    store: RecordStore,
    is_ready: Callable[[], bool] | None = None,
    *,
    ready_throttle_ms: float | None = None,
    poll_ready_interval_ms: float | None = None,
) -> PersistingWorker:
    return PersistingWorker(
        store,
        is_ready,
        ready_throttle_ms=ready_throttle_ms,
        poll_ready_interval_ms=poll_ready_interval_ms,
    )
