"""Queue workers: bounded pools of concurrent job consumers.

A worker claims jobs from one queue and invokes the bound handler. The
handler's return value completes the job; an exception fails the attempt and
the queue decides between a backoff retry and a terminal failure. Exceptions
carrying ``retryable = False`` skip the remaining attempts.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from autoflow.core.logging import get_logger
from .jobs import Job, JobState
from .queue import JobQueue

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class QueueWorker:
    """Consumes one queue with up to ``concurrency`` jobs in flight."""

    def __init__(self, queue: JobQueue, handler: JobHandler,
                 concurrency: int = 1, poll_timeout: float = 1.0):
        """Initialize the worker.

        Args:
            queue: Queue to consume
            handler: Async callable invoked with each claimed job
            concurrency: Number of consumer slots
            poll_timeout: Seconds a slot blocks waiting for a job before re-checking shutdown
        """
        if concurrency < 1:
            raise ValueError("Worker concurrency must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._active_jobs: int = 0

    @property
    def is_running(self) -> bool:
        """Check if the consumer slots are running."""
        return self._running and any(not task.done() for task in self._tasks)

    @property
    def active_jobs(self) -> int:
        return self._active_jobs

    async def start(self) -> None:
        """Start the consumer slots in the background."""
        if self._running:
            logger.warning("Queue worker already running", queue=self.queue.name)
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume(slot), name=f"{self.queue.name}-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info("Queue worker started", queue=self.queue.name, concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop all consumer slots. Jobs in flight are cancelled."""
        if not self._tasks:
            return

        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Queue worker stopped", queue=self.queue.name)

    async def _consume(self, slot: int) -> None:
        """Consumer loop for one slot."""
        while self._running:
            try:
                job = await self.queue.fetch_next(timeout=self.poll_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Failed to fetch job", queue=self.queue.name, slot=slot, error=str(e))
                await asyncio.sleep(self.poll_timeout)
                continue

            if job is None:
                continue
            await self.process_job(job)

    async def process_job(self, job: Job) -> Optional[JobState]:
        """Run the handler for one claimed job and acknowledge the outcome.

        Returns:
            The job's state after acknowledgement
        """
        self._active_jobs += 1
        try:
            result = await self.handler(job)
        except asyncio.CancelledError:
            await self.queue.fail(job, "Worker stopped while job was active", retryable=True)
            raise
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            logger.warning("Job attempt failed", queue=self.queue.name, job_id=job.id,
                           attempt=job.attempts_made, retryable=retryable, error=str(e))
            return await self.queue.fail(job, str(e), retryable=retryable)
        else:
            await self.queue.complete(job, result)
            return JobState.COMPLETED
        finally:
            self._active_jobs -= 1
