"""Job queues for workflow and node jobs.

Two interchangeable backends share one contract (JobQueue):
- RedisJobQueue: durable, shared by every worker process (production)
- MemoryJobQueue: process-local, used by tests and single-process setups

Each queue applies its own retry/backoff and removal policy, so the workflow
queue and the node queue never share a retry budget.
"""

import asyncio
import heapq
import itertools
import json
import time
import uuid
from typing import Any, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as redis

from autoflow.core.logging import get_logger, log_queue_operation
from .events import QueueEvents
from .jobs import Job, JobOptions, JobState, now_ms

logger = get_logger(__name__)

# Delayed jobs are promoted at least this often while a consumer is waiting
DELAYED_POLL_INTERVAL = 0.05  # seconds


class JobQueue(Protocol):
    """Protocol for job queues (enables duck typing)."""

    name: str
    events: QueueEvents

    async def add(self, name: str, data: Dict[str, Any],
                  options: Optional[JobOptions] = None,
                  job_id: Optional[str] = None) -> Job:
        """Enqueue a job and return it."""
        ...

    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    async def get_job_counts(self) -> Dict[str, int]:
        ...

    async def remove(self, job_id: str) -> bool:
        """Remove a job that is not being processed."""
        ...

    async def remove_all(self) -> None:
        ...

    async def is_paused(self) -> bool:
        ...

    async def pause(self) -> None:
        ...

    async def resume(self) -> None:
        ...

    async def clean(self, grace_ms: int, state: JobState = JobState.COMPLETED) -> int:
        """Remove finished jobs older than ``grace_ms``."""
        ...

    async def fetch_next(self, timeout: float) -> Optional[Job]:
        """Claim the next dispatchable job, or None after ``timeout`` seconds."""
        ...

    async def complete(self, job: Job, return_value: Any = None) -> None:
        ...

    async def fail(self, job: Job, error: str, retryable: bool = True) -> JobState:
        """Record a failed attempt. Returns DELAYED when a retry was scheduled."""
        ...

    async def wait_until_finished(self, job_id: str, timeout: float) -> Optional[Job]:
        """Wait for a job to reach a finished state (None if it no longer exists)."""
        ...

    async def close(self) -> None:
        ...


def _new_job_id() -> str:
    return uuid.uuid4().hex


def _priority_score(priority: int, sequence: int) -> float:
    """Sort key: higher priority first, FIFO within a priority."""
    return (10 - priority) * 1e13 + sequence


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class MemoryJobQueue:
    """Process-local job queue with the same semantics as RedisJobQueue."""

    def __init__(self, name: str, default_options: Optional[JobOptions] = None):
        self.name = name
        self.default_options = default_options or JobOptions()
        self.events = QueueEvents(name)
        self._jobs: Dict[str, Job] = {}
        self._waiting: List[Tuple[float, str]] = []
        self._delayed: Dict[str, int] = {}  # job_id -> ready timestamp (ms)
        self._completed: List[str] = []
        self._failed: List[str] = []
        self._finished_events: Dict[str, asyncio.Event] = {}
        self._sequence = itertools.count()
        self._cond = asyncio.Condition()
        self._paused = False
        self._closed = False

    async def is_paused(self) -> bool:
        return self._paused

    async def add(self, name: str, data: Dict[str, Any],
                  options: Optional[JobOptions] = None,
                  job_id: Optional[str] = None) -> Job:
        opts = (options or JobOptions()).with_defaults(self.default_options)
        job = Job(id=job_id or _new_job_id(), name=name, data=data, opts=opts)

        async with self._cond:
            if job.id in self._jobs:
                return self._jobs[job.id]
            self._jobs[job.id] = job
            if opts.delay > 0:
                job.state = JobState.DELAYED
                self._delayed[job.id] = now_ms() + opts.delay
            else:
                self._push_waiting(job)
            self._cond.notify_all()

        log_queue_operation(logger, "add", self.name, job_id=job.id, job_name=name,
                            priority=opts.priority)
        self.events.publish(job.state.value, job.id, {"name": name})
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    async def get_job_counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            state = job.state
            if state == JobState.WAITING and self._paused:
                state = JobState.PAUSED
            counts[state.value] += 1
        return counts

    async def remove(self, job_id: str) -> bool:
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state == JobState.ACTIVE:
                return False
            self._discard(job_id)
        log_queue_operation(logger, "remove", self.name, job_id=job_id)
        return True

    async def remove_all(self) -> None:
        async with self._cond:
            for job_id in list(self._jobs):
                self._discard(job_id)
            self._waiting.clear()
        log_queue_operation(logger, "remove_all", self.name)

    async def pause(self) -> None:
        self._paused = True
        logger.info("Queue paused", queue=self.name)

    async def resume(self) -> None:
        async with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("Queue resumed", queue=self.name)

    async def clean(self, grace_ms: int, state: JobState = JobState.COMPLETED) -> int:
        cutoff = now_ms() - grace_ms
        async with self._cond:
            stale = [
                job.id for job in self._jobs.values()
                if job.state == state and job.finished_on is not None and job.finished_on <= cutoff
            ]
            for job_id in stale:
                self._discard(job_id)
        log_queue_operation(logger, "clean", self.name, state=state.value, removed=len(stale))
        return len(stale)

    async def fetch_next(self, timeout: float) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async with self._cond:
            while not self._closed:
                self._promote_delayed()
                if not self._paused:
                    job = self._pop_waiting()
                    if job is not None:
                        job.state = JobState.ACTIVE
                        job.attempts_made += 1
                        job.processed_on = now_ms()
                        self.events.publish("active", job.id, {"attempt": job.attempts_made})
                        return job

                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                if self._delayed:
                    remaining = min(remaining, DELAYED_POLL_INTERVAL)
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        return None

    async def complete(self, job: Job, return_value: Any = None) -> None:
        async with self._cond:
            if job.id not in self._jobs:
                self._signal_finished(job.id)
                return
            job.state = JobState.COMPLETED
            job.finished_on = now_ms()
            job.return_value = return_value
            self._completed.append(job.id)
            self._trim(self._completed, job.opts.remove_on_complete)
            self._signal_finished(job.id)
        self.events.publish("completed", job.id)

    async def fail(self, job: Job, error: str, retryable: bool = True) -> JobState:
        async with self._cond:
            if job.id not in self._jobs:
                self._signal_finished(job.id)
                return JobState.FAILED
            job.failed_reason = error
            if retryable and job.attempts_made < job.max_attempts:
                job.state = JobState.DELAYED
                self._delayed[job.id] = now_ms() + job.retry_delay()
                self._cond.notify_all()
            else:
                job.state = JobState.FAILED
                job.finished_on = now_ms()
                self._failed.append(job.id)
                self._trim(self._failed, job.opts.remove_on_fail)
                self._signal_finished(job.id)

        if job.state == JobState.DELAYED:
            logger.info("Job scheduled for retry", queue=self.name, job_id=job.id,
                        attempt=job.attempts_made, max_attempts=job.max_attempts, error=error)
        self.events.publish(job.state.value, job.id, {"error": error})
        return job.state

    async def wait_until_finished(self, job_id: str, timeout: float) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.is_finished:
            return job
        event = self._finished_events.setdefault(job_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)
        return self._jobs.get(job_id) or job

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
        logger.debug("Queue closed", queue=self.name)

    # -------------------------------------------------------------------------
    # internals (callers hold self._cond)
    # -------------------------------------------------------------------------

    def _push_waiting(self, job: Job) -> None:
        job.state = JobState.WAITING
        score = _priority_score(job.opts.priority, next(self._sequence))
        heapq.heappush(self._waiting, (score, job.id))

    def _pop_waiting(self) -> Optional[Job]:
        while self._waiting:
            _, job_id = heapq.heappop(self._waiting)
            job = self._jobs.get(job_id)
            # Stale heap entries are skipped (job removed or re-queued)
            if job is not None and job.state == JobState.WAITING:
                return job
        return None

    def _promote_delayed(self) -> None:
        if not self._delayed:
            return
        current = now_ms()
        for job_id, ready_at in list(self._delayed.items()):
            if ready_at <= current:
                del self._delayed[job_id]
                job = self._jobs.get(job_id)
                if job is not None:
                    self._push_waiting(job)

    def _trim(self, finished: List[str], keep: Optional[int]) -> None:
        if keep is None:
            return
        while len(finished) > keep:
            self._jobs.pop(finished.pop(0), None)

    def _signal_finished(self, job_id: str) -> None:
        event = self._finished_events.pop(job_id, None)
        if event is not None:
            event.set()

    def _discard(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._delayed.pop(job_id, None)
        if job_id in self._completed:
            self._completed.remove(job_id)
        if job_id in self._failed:
            self._failed.remove(job_id)
        self._signal_finished(job_id)


# =============================================================================
# REDIS BACKEND
# =============================================================================

class RedisJobQueue:
    """Redis-backed job queue shared by all worker processes.

    Key schema (prefix = "{key_prefix}:{queue name}"):
        {prefix}:job:{id}    -> HASH (Job fields, JSON encoded)
        {prefix}:wait        -> ZSET {job_id: priority score}
        {prefix}:delayed     -> ZSET {job_id: ready timestamp ms}
        {prefix}:active      -> SET {job_ids}
        {prefix}:completed   -> ZSET {job_id: finished timestamp ms}
        {prefix}:failed      -> ZSET {job_id: finished timestamp ms}
        {prefix}:paused      -> STRING flag
        {prefix}:seq         -> STRING counter (FIFO tiebreak)
        {prefix}:events      -> STREAM (lifecycle side-channel, trimmed)
    """

    EVENTS_MAXLEN = 1000
    POLL_INTERVAL = 0.1  # seconds

    def __init__(self, client: redis.Redis, name: str,
                 default_options: Optional[JobOptions] = None,
                 key_prefix: str = "autoflow"):
        self.redis = client
        self.name = name
        self.default_options = default_options or JobOptions()
        self.events = QueueEvents(name)
        self.prefix = f"{key_prefix}:{name}"
        self._closed = False

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    async def _publish(self, event: str, job_id: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.events.publish(event, job_id, data)
        await self.redis.xadd(
            self._key("events"),
            {"event": event, "jobId": job_id},
            maxlen=self.EVENTS_MAXLEN,
            approximate=True,
        )

    async def is_paused(self) -> bool:
        return bool(await self.redis.exists(self._key("paused")))

    async def add(self, name: str, data: Dict[str, Any],
                  options: Optional[JobOptions] = None,
                  job_id: Optional[str] = None) -> Job:
        opts = (options or JobOptions()).with_defaults(self.default_options)
        job = Job(id=job_id or _new_job_id(), name=name, data=data, opts=opts)

        if opts.delay > 0:
            job.state = JobState.DELAYED
        created = await self.redis.hsetnx(self._job_key(job.id), "id", json.dumps(job.id))
        if not created:
            existing = await self.get_job(job.id)
            if existing is not None:
                return existing

        sequence = await self.redis.incr(self._key("seq"))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            if job.state == JobState.DELAYED:
                pipe.zadd(self._key("delayed"), {job.id: job.timestamp + opts.delay})
            else:
                pipe.zadd(self._key("wait"), {job.id: _priority_score(opts.priority, sequence)})
            await pipe.execute()

        log_queue_operation(logger, "add", self.name, job_id=job.id, job_name=name,
                            priority=opts.priority)
        await self._publish(job.state.value, job.id)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        mapping = await self.redis.hgetall(self._job_key(job_id))
        if not mapping or "data" not in mapping:
            return None
        return Job.from_hash(mapping)

    async def get_job_counts(self) -> Dict[str, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("wait"))
            pipe.zcard(self._key("delayed"))
            pipe.scard(self._key("active"))
            pipe.zcard(self._key("completed"))
            pipe.zcard(self._key("failed"))
            pipe.exists(self._key("paused"))
            waiting, delayed, active, completed, failed, paused = await pipe.execute()

        return {
            JobState.WAITING.value: 0 if paused else waiting,
            JobState.PAUSED.value: waiting if paused else 0,
            JobState.DELAYED.value: delayed,
            JobState.ACTIVE.value: active,
            JobState.COMPLETED.value: completed,
            JobState.FAILED.value: failed,
        }

    async def remove(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None or job.state == JobState.ACTIVE:
            return False
        await self._delete_jobs([job_id])
        log_queue_operation(logger, "remove", self.name, job_id=job_id)
        return True

    async def remove_all(self) -> None:
        keys = [key async for key in self.redis.scan_iter(match=f"{self.prefix}:*", count=500)]
        for start in range(0, len(keys), 500):
            await self.redis.delete(*keys[start:start + 500])
        log_queue_operation(logger, "remove_all", self.name, keys=len(keys))

    async def pause(self) -> None:
        await self.redis.set(self._key("paused"), "1")
        logger.info("Queue paused", queue=self.name)

    async def resume(self) -> None:
        await self.redis.delete(self._key("paused"))
        logger.info("Queue resumed", queue=self.name)

    async def clean(self, grace_ms: int, state: JobState = JobState.COMPLETED) -> int:
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, got {state.value}")
        stale = await self.redis.zrangebyscore(self._key(state.value), "-inf", now_ms() - grace_ms)
        if stale:
            await self._delete_jobs(stale)
        log_queue_operation(logger, "clean", self.name, state=state.value, removed=len(stale))
        return len(stale)

    async def fetch_next(self, timeout: float) -> Optional[Job]:
        deadline = time.monotonic() + timeout

        while not self._closed:
            next_due = await self._promote_delayed()

            if not await self.is_paused():
                block = max(min(deadline - time.monotonic(), 1.0), 0.01)
                if next_due is not None:
                    # Wake up in time to promote the next delayed job
                    block = max(min(block, next_due), 0.01)
                popped = await self.redis.bzpopmin(self._key("wait"), timeout=block)
                if popped:
                    job = await self._activate(popped[1])
                    if job is not None:
                        return job
                    continue
            else:
                await asyncio.sleep(self.POLL_INTERVAL)

            if time.monotonic() >= deadline:
                return None
        return None

    async def _activate(self, job_id: str) -> Optional[Job]:
        job = await self.get_job(job_id)
        if job is None:
            # Removed between enqueue and dispatch
            return None
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.processed_on = now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.sadd(self._key("active"), job.id)
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            await pipe.execute()
        await self._publish("active", job.id, {"attempt": job.attempts_made})
        return job

    async def _promote_delayed(self) -> Optional[float]:
        """Move due delayed jobs to the wait set.

        Returns:
            Seconds until the next delayed job is due, or None when none remain
        """
        due = await self.redis.zrangebyscore(self._key("delayed"), "-inf", now_ms())
        for job_id in due:
            # Only the consumer whose ZREM succeeds promotes the job
            if not await self.redis.zrem(self._key("delayed"), job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                continue
            sequence = await self.redis.incr(self._key("seq"))
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job_id), "state", json.dumps(JobState.WAITING.value))
                pipe.zadd(self._key("wait"), {job_id: _priority_score(job.opts.priority, sequence)})
                await pipe.execute()

        upcoming = await self.redis.zrange(self._key("delayed"), 0, 0, withscores=True)
        if not upcoming:
            return None
        return max(upcoming[0][1] - now_ms(), 0) / 1000

    async def complete(self, job: Job, return_value: Any = None) -> None:
        job.state = JobState.COMPLETED
        job.finished_on = now_ms()
        job.return_value = return_value
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(self._key("active"), job.id)
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            pipe.zadd(self._key("completed"), {job.id: job.finished_on})
            await pipe.execute()
        await self._trim(JobState.COMPLETED, job.opts.remove_on_complete)
        await self._publish("completed", job.id)

    async def fail(self, job: Job, error: str, retryable: bool = True) -> JobState:
        job.failed_reason = error
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.srem(self._key("active"), job.id)
            if retryable and job.attempts_made < job.max_attempts:
                job.state = JobState.DELAYED
                pipe.zadd(self._key("delayed"), {job.id: now_ms() + job.retry_delay()})
            else:
                job.state = JobState.FAILED
                job.finished_on = now_ms()
                pipe.zadd(self._key("failed"), {job.id: job.finished_on})
            pipe.hset(self._job_key(job.id), mapping=job.to_hash())
            await pipe.execute()

        if job.state == JobState.FAILED:
            await self._trim(JobState.FAILED, job.opts.remove_on_fail)
        else:
            logger.info("Job scheduled for retry", queue=self.name, job_id=job.id,
                        attempt=job.attempts_made, max_attempts=job.max_attempts, error=error)
        await self._publish(job.state.value, job.id, {"error": error})
        return job.state

    async def wait_until_finished(self, job_id: str, timeout: float) -> Optional[Job]:
        deadline = time.monotonic() + timeout
        while True:
            job = await self.get_job(job_id)
            if job is None or job.is_finished:
                return job
            if time.monotonic() >= deadline:
                raise asyncio.TimeoutError(f"Job {job_id} did not finish within {timeout}s")
            await asyncio.sleep(self.POLL_INTERVAL)

    async def close(self) -> None:
        self._closed = True
        logger.debug("Queue closed", queue=self.name)

    async def _trim(self, state: JobState, keep: Optional[int]) -> None:
        if keep is None:
            return
        key = self._key(state.value)
        # Oldest first; everything except the newest ``keep`` entries
        stale = await self.redis.zrange(key, 0, -(keep + 1))
        if stale:
            await self._delete_jobs(stale)

    async def _delete_jobs(self, job_ids: List[str]) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            for job_id in job_ids:
                for suffix in ("wait", "delayed", "completed", "failed"):
                    pipe.zrem(self._key(suffix), job_id)
                pipe.delete(self._job_key(job_id))
            await pipe.execute()


def create_job_queue(name: str, default_options: JobOptions,
                     client: Optional[redis.Redis] = None,
                     key_prefix: str = "autoflow") -> JobQueue:
    """Factory function to create the queue backend.

    Args:
        name: Queue name
        default_options: Queue-level job policy
        client: Redis client; when None the queue is process-local

    Returns:
        RedisJobQueue if a client is given, MemoryJobQueue otherwise
    """
    if client is not None:
        return RedisJobQueue(client, name, default_options=default_options, key_prefix=key_prefix)
    logger.info("Using in-memory job queue", queue=name)
    return MemoryJobQueue(name, default_options=default_options)
