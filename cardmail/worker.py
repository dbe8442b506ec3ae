"""
Worker pool: N asyncio tasks pulling jobs from one JobStore.
"""

import asyncio
import logging
from typing import List, Optional

from .job_store import JobStore
from .orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Runs ``concurrency`` workers that claim jobs and hand them to the
    orchestrator. Idle workers sleep on a shared wake signal, bounded by
    the store's next eligibility deadline.
    """

    def __init__(
        self,
        store: JobStore,
        orchestrator: PipelineOrchestrator,
        concurrency: Optional[int] = None,
        idle_timeout: float = 5.0
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.concurrency = concurrency or store.max_concurrency
        self.idle_timeout = idle_timeout

        self._tasks: List[asyncio.Task] = []
        self._wake: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _on_store_change(self) -> None:
        # Called from any thread
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._wake.set)

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._running = True
        self.store.add_listener(self._on_store_change)
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"cardmail-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} workers")

    async def stop(self) -> None:
        """Stop the workers; jobs mid-stage are cancelled with them."""
        if not self._running:
            return
        self._running = False
        self.store.remove_listener(self._on_store_change)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Workers stopped")

    async def _worker(self, index: int) -> None:
        while self._running:
            self._wake.clear()

            job = self.store.dequeue_next()
            if job is not None:
                try:
                    await self.orchestrator.run(job)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception(f"Worker {index} crashed while running {job.id}")
                continue

            delay = self.store.seconds_until_eligible()
            timeout = self.idle_timeout if delay is None else min(delay, self.idle_timeout)
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
