"""
MathPulse Worker – Worker Pool.

Runs a fixed number of concurrent workers against one JobQueue. Each
worker loops: lease → handler.process → ack, or nack on any exception.

Handlers never touch queue mechanics. The pool owns retries: it reports
failures through `nack`, and when the queue says a job is exhausted it
hands the job back to `handler.on_exhausted` so the owning Session or
Submission can be marked failed.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

from queueing.job_queue import Job, JobQueue, JobState

logger = logging.getLogger(__name__)


class JobHandler(Protocol):
    name: str

    async def process(self, job: Job) -> Optional[dict[str, Any]]:
        ...

    async def on_exhausted(self, job: Job, error: Exception) -> None:
        ...


class WorkerPool:
    """
    Lifecycle:
    - start() spawns `concurrency` worker tasks
    - stop() stops leasing, lets in-flight jobs finish within a grace
      period, then cancels whatever is left
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        concurrency: int = 2,
        lease_poll_interval: float = 0.5,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.lease_poll_interval = lease_poll_interval
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"{self.queue.name}-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} worker(s) on {self.queue.name}")

    async def stop(self, grace_seconds: float = 10.0) -> None:
        self._stopping.set()
        if not self._tasks:
            return

        _, pending = await asyncio.wait(self._tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._tasks = []
        logger.info(f"Stopped workers on {self.queue.name}")

    async def run_once(self) -> Optional[Job]:
        """Lease and execute one due job, if any. Returns the final job record."""
        job = await self.queue.try_lease()
        if job is None:
            return None
        return await self._execute(job)

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            job = await self.queue.lease(self.lease_poll_interval, self._stopping)
            if job is None:
                break
            try:
                await self._execute(job)
            except Exception as e:
                # Queue/store outage while reporting; the lease is recovered
                # by stalled-job maintenance.
                logger.error(
                    f"Worker {worker_id} on {self.queue.name} could not settle job {job.id}: {e}",
                    exc_info=True,
                )
                await asyncio.sleep(self.lease_poll_interval)

    async def _execute(self, job: Job) -> Job:
        logger.info(
            f"Processing {job.name} job {job.id} "
            f"(attempt {job.attempt_count + 1}/{job.max_attempts})"
        )
        try:
            result = await self.handler.process(job)
        except Exception as e:
            logger.error(f"{job.name} job {job.id} failed: {e}", exc_info=True)
            updated = await self.queue.nack(job.id, str(e) or type(e).__name__)
            if updated.status is JobState.FAILED:
                try:
                    await self.handler.on_exhausted(updated, e)
                except Exception as hook_error:
                    logger.error(
                        f"Failure propagation for job {job.id} failed: {hook_error}",
                        exc_info=True,
                    )
            return updated

        logger.info(f"✅ {job.name} job {job.id} completed")
        return await self.queue.ack(job.id, result)
