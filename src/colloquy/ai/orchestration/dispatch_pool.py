"""Bounded-concurrency parallel map with ordered, isolated results.

Workers are asyncio tasks pulling from a shared queue. :meth:`DispatchPool.submit`
blocks until every submitted item has produced a :class:`UnitResult` and
returns them in input order. A unit that raises yields a failed result for
that unit only.

Always release a pool you create::

    async with DispatchPool(concurrency=4) as pool:
        results = await pool.submit(items, work)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Iterable, TypeVar

__all__ = ["DispatchPool", "UnitResult"]

LOGGER = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8

T = TypeVar("T")
R = TypeVar("R")


@dataclass(slots=True, frozen=True)
class UnitResult(Generic[R]):
    """``{ok, value}`` or ``{error, reason}`` for one submitted item."""

    index: int
    ok: bool
    value: R | None = None
    error: BaseException | None = None

    @property
    def reason(self) -> str:
        if self.error is None:
            return ""
        return str(self.error) or type(self.error).__name__


@dataclass(slots=True)
class _Job:
    index: int
    item: Any
    work: Callable[[Any], Any]
    future: asyncio.Future[UnitResult[Any]]


class DispatchPool:
    """Fixed set of workers executing units of work concurrently."""

    def __init__(self, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be a positive integer")
        self._concurrency = concurrency
        self._queue: asyncio.Queue[_Job | None] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(
        self,
        items: Iterable[T],
        work: Callable[[T], R] | Callable[[T], Any],
    ) -> list[UnitResult[R]]:
        """Run ``work`` over ``items`` and return results in input order.

        ``work`` may be a plain function or return an awaitable.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        if self._closed:
            raise RuntimeError("DispatchPool has been shut down")
        batch = list(items)
        if not batch:
            return []
        queue = self._ensure_started()
        loop = asyncio.get_running_loop()
        futures: list[asyncio.Future[UnitResult[Any]]] = []
        for index, item in enumerate(batch):
            future: asyncio.Future[UnitResult[Any]] = loop.create_future()
            futures.append(future)
            queue.put_nowait(_Job(index=index, item=item, work=work, future=future))
        return list(await asyncio.gather(*futures))

    def shutdown(self) -> None:
        """Stop accepting submissions; workers exit once the queue drains."""

        if self._closed:
            return
        self._closed = True
        if self._queue is not None:
            for _ in self._workers:
                self._queue.put_nowait(None)

    async def join(self) -> None:
        """Wait for every worker to exit. Call :meth:`shutdown` first."""

        if not self._workers:
            return
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    async def __aenter__(self) -> DispatchPool:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.shutdown()
        await self.join()

    def _ensure_started(self) -> asyncio.Queue[_Job | None]:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._workers = [
                asyncio.create_task(self._worker(self._queue), name=f"dispatch-worker-{position}")
                for position in range(self._concurrency)
            ]
        return self._queue

    async def _worker(self, queue: asyncio.Queue[_Job | None]) -> None:
        while True:
            job = await queue.get()
            try:
                if job is None:
                    return
                try:
                    result = await self._execute(job)
                except BaseException as exc:
                    # The worker itself is going away; release the waiting submitter.
                    if not job.future.done():
                        if isinstance(exc, asyncio.CancelledError):
                            job.future.cancel()
                        else:
                            job.future.set_exception(exc)
                    raise
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                queue.task_done()

    @staticmethod
    async def _execute(job: _Job) -> UnitResult[Any]:
        try:
            value = job.work(job.item)
            if inspect.isawaitable(value):
                value = await value
        except asyncio.CancelledError as exc:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            LOGGER.warning("Dispatch unit %s was cancelled", job.index)
            return UnitResult(index=job.index, ok=False, error=exc)
        except Exception as exc:
            LOGGER.warning("Dispatch unit %s failed: %s", job.index, exc, exc_info=True)
            return UnitResult(index=job.index, ok=False, error=exc)
        return UnitResult(index=job.index, ok=True, value=value)
