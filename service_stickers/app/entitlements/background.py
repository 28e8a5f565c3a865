"""
Detached background tasks (cache warming) for the Stickers Service.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector


class BackgroundTaskRunner:
    """Runs fire-and-forget coroutines outside the request that submitted them.

    Tasks are not cancelled with the submitting request. Their failures are
    logged (and counted) here and never reach the submitter.
    """

    def __init__(self, concurrency: int = 5, metrics: Optional[MetricsCollector] = None):
        self.logger = get_logger("stickers.background")
        self.metrics = metrics
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, factory: Callable[[], Awaitable[None]]) -> Optional[asyncio.Task]:
        """Schedule ``factory()`` to run in the background."""
        if self._closed:
            self.logger.warning("Background runner closed; task dropped", task=name)
            return None

        task = asyncio.create_task(self._run(name, factory), name=name)
        # The event loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: Callable[[], Awaitable[None]]) -> None:
        async with self._semaphore:
            try:
                await factory()
            except asyncio.CancelledError:
                self.logger.warning("Background task cancelled", task=name)
                raise
            except Exception as e:
                self.logger.error("Background task failed", task=name, error=str(e))
                self._record("failed")
                return
        self._record("succeeded")

    def _record(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("background_tasks_total", outcome=outcome)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all submitted tasks to finish."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            self.logger.warning("Background tasks still running after drain", count=len(pending))

    async def close(self, timeout: float = 5.0) -> None:
        """Stop accepting tasks, wait briefly, then cancel what is left."""
        self._closed = True
        await self.drain(timeout=timeout)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
