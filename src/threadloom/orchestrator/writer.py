"""Single-writer queue that serializes model mutations."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationQueue:
    """Runs submitted coroutines one at a time on a dedicated worker task.

    Callers receive results (or exceptions) through the awaited future. A
    mutation submitted from inside another mutation runs inline.
    """

    def __init__(self, name: str = "threadloom-writer") -> None:
        self._name = name
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run(), name=self._name)

    async def submit(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        if self._worker is not None and asyncio.current_task() is self._worker:
            return await fn(*args, **kwargs)
        self.start()
        queue = self._queue
        if queue is None:
            raise RuntimeError("Mutation queue is closed")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await queue.put((fn, args, kwargs, future))
        return await future

    async def _run(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while True:
            fn, args, kwargs, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = await fn(*args, **kwargs)
                except asyncio.CancelledError:
                    if not future.done():
                        future.cancel()
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()

    async def close(self) -> None:
        worker, queue = self._worker, self._queue
        self._worker = None
        self._queue = None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        if queue is not None:
            while not queue.empty():
                *_, future = queue.get_nowait()
                if not future.done():
                    future.cancel()


__all__ = ["MutationQueue"]
