"""Ready queue: buffer calls until a readiness predicate allows a batch drain.

`queued_function(func, is_ready)` wraps `func` so that calling the wrapper
returns a future immediately and defers the actual call. Buffered calls are
drained together, in enqueue order, once `is_ready()` returns True. The
predicate is evaluated at most once per `ready_throttle_ms` window on the
trailing edge, so a burst of enqueues costs one readiness check.

Each entry's future settles on its own: a raising call fails only that
entry's future (with `DrainError`) and the rest of the batch still runs.
Drains never overlap; calls enqueued while a drain is running go to a fresh
buffer and are picked up by the next drain.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from streamgen.core.exceptions import DrainError


logger = logging.getLogger(__name__)

R = TypeVar("R")


@dataclass(slots=True)
class QueueEntry(Generic[R]):  # noqa: UP046
    args: tuple[Any, ...]
    kwargs: dict[str, Any]
    future: asyncio.Future[R] = field(repr=False)


@dataclass(slots=True)
class DrainResult(Generic[R]):  # noqa: UP046
    entry: QueueEntry[R]
    success: bool
    result: R | None = None
    error: BaseException | None = None


BeforeDrainCallback = Callable[[list[QueueEntry[Any]]], Any]
AfterDrainCallback = Callable[[list[DrainResult[Any]]], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class QueuedFunction(Generic[R]):  # noqa: UP046
    """Callable wrapper produced by `queued_function`."""

    def __init__(
        self,
        func: Callable[..., R | Awaitable[R]],
        is_ready: Callable[[], bool],
        *,
        ready_throttle_ms: float = 0,
        poll_ready_interval_ms: float | None = None,
        before_drain_callback: BeforeDrainCallback | None = None,
        after_drain_callback: AfterDrainCallback | None = None,
    ) -> None:
        if ready_throttle_ms < 0:
            raise ValueError("ready_throttle_ms must be >= 0")
        if poll_ready_interval_ms is not None and poll_ready_interval_ms <= 0:
            raise ValueError("poll_ready_interval_ms must be > 0 when set")

        self._func = func
        self._is_ready = is_ready
        self._throttle = ready_throttle_ms / 1000
        self._poll_interval = (
            poll_ready_interval_ms / 1000 if poll_ready_interval_ms else None
        )
        self._before_drain = before_drain_callback
        self._after_drain = after_drain_callback

        self._buffer: list[QueueEntry[R]] = []
        self._last_check: float | None = None
        self._check_handle: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._closed = False

    def __call__(self, *args: Any, **kwargs: Any) -> asyncio.Future[R]:
        if self._closed:
            raise RuntimeError("queued function is closed")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[R] = loop.create_future()
        self._buffer.append(QueueEntry(args=args, kwargs=kwargs, future=future))
        self._schedule_check()
        self._ensure_poller()
        return future

    @property
    def pending(self) -> int:
        """Number of buffered calls not yet handed to a drain."""
        return len(self._buffer)

    @property
    def draining(self) -> bool:
        return self._drain_task is not None

    def close(self) -> None:
        """Stop the poll timer and any scheduled readiness check.

        Buffered entries stay pending; a drain already running completes.
        """
        self._closed = True
        if self._check_handle is not None:
            self._check_handle.cancel()
            self._check_handle = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    # -- scheduling -----------------------------------------------------

    def _schedule_check(self) -> None:
        if self._check_handle is not None or self._closed:
            return
        loop = asyncio.get_running_loop()
        now = loop.time()
        due = now
        if self._last_check is not None:
            due = max(now, self._last_check + self._throttle)
        self._check_handle = loop.call_at(due, self._run_check)

    def _run_check(self) -> None:
        self._check_handle = None
        # A running drain re-checks once it finishes
        if self._drain_task is not None or not self._buffer:
            return

        self._last_check = asyncio.get_running_loop().time()
        try:
            ready = bool(self._is_ready())
        except Exception:
            logger.exception("Readiness check raised; treating queue as not ready")
            return
        if not ready:
            logger.debug("Queue not ready; %d call(s) buffered", len(self._buffer))
            return

        entries, self._buffer = self._buffer, []
        self._drain_task = asyncio.get_running_loop().create_task(
            self._drain(entries)
        )

    def _ensure_poller(self) -> None:
        if self._poll_interval is None or self._closed:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    async def _poll(self) -> None:
        assert self._poll_interval is not None
        while self._buffer and not self._closed:
            await asyncio.sleep(self._poll_interval)
            if self._buffer:
                self._schedule_check()

    # -- draining -------------------------------------------------------

    async def _drain(self, entries: list[QueueEntry[R]]) -> None:
        try:
            await self._drain_entries(entries)
        finally:
            self._drain_task = None
            if self._buffer:
                self._schedule_check()

    async def _drain_entries(self, entries: list[QueueEntry[R]]) -> None:
        logger.debug("Draining %d queued call(s)", len(entries))

        if self._before_drain is not None:
            try:
                await _maybe_await(self._before_drain(list(entries)))
            except Exception as exc:
                logger.exception("before_drain_callback failed; failing batch")
                for entry in entries:
                    self._fail(entry, exc)
                return

        results: list[DrainResult[R]] = []
        for entry in entries:
            try:
                value = await _maybe_await(self._func(*entry.args, **entry.kwargs))
            except Exception as exc:
                error = self._fail(entry, exc)
                results.append(DrainResult(entry=entry, success=False, error=error))
            else:
                if not entry.future.done():
                    entry.future.set_result(value)
                results.append(DrainResult(entry=entry, success=True, result=value))

        successes = sum(1 for r in results if r.success)
        logger.debug(
            "Drained %d queued call(s) (%d/%d successes)",
            len(results),
            successes,
            len(results),
        )

        if self._after_drain is not None:
            try:
                await _maybe_await(self._after_drain(results))
            except Exception:
                # Entry futures are already settled; nothing left to fail
                logger.exception("after_drain_callback failed")

    def _fail(self, entry: QueueEntry[R], exc: BaseException) -> DrainError:
        error = DrainError(f"Queued call failed: {exc}")
        error.__cause__ = exc
        logger.warning("Queued call failed: %s", exc)
        if not entry.future.done():
            entry.future.set_exception(error)
        return error


def queued_function(
    func: Callable[..., R | Awaitable[R]],
    is_ready: Callable[[], bool],
    *,
    ready_throttle_ms: float = 0,
    poll_ready_interval_ms: float | None = None,
    before_drain_callback: BeforeDrainCallback | None = None,
    after_drain_callback: AfterDrainCallback | None = None,
) -> QueuedFunction[R]:
    """Wrap `func` in a ready queue. See the module docstring."""
    return QueuedFunction(
        func,
        is_ready,
        ready_throttle_ms=ready_throttle_ms,
        poll_ready_interval_ms=poll_ready_interval_ms,
        before_drain_callback=before_drain_callback,
        after_drain_callback=after_drain_callback,
    )
