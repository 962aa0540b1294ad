"""Tests for job records and both queue backends."""

import asyncio

import fakeredis.aioredis
import pytest

from autoflow.services.execution import Backoff, JobOptions, JobState, MemoryJobQueue, RedisJobQueue
from autoflow.services.execution.jobs import Job


class TestBackoff:
    def test_exponential_doubles_per_attempt(self):
        backoff = Backoff(type="exponential", delay=2000)
        assert [backoff.compute_delay(n) for n in (1, 2, 3)] == [2000, 4000, 8000]

    def test_fixed_is_constant(self):
        backoff = Backoff(type="fixed", delay=500)
        assert [backoff.compute_delay(n) for n in (1, 2, 3)] == [500, 500, 500]


class TestJobOptions:
    def test_priority_must_be_in_range(self):
        with pytest.raises(ValueError):
            JobOptions(priority=0)
        with pytest.raises(ValueError):
            JobOptions(priority=11)

    def test_unset_fields_come_from_queue_defaults(self):
        defaults = JobOptions(attempts=3, backoff=Backoff(delay=2000),
                              remove_on_complete=100, remove_on_fail=50)
        merged = JobOptions(priority=8, remove_on_complete=10).with_defaults(defaults)

        assert merged.priority == 8
        assert merged.attempts == 3
        assert merged.backoff.delay == 2000
        assert merged.remove_on_complete == 10
        assert merged.remove_on_fail == 50

    def test_job_hash_encoding_preserves_fields(self):
        job = Job(id="j1", name="execute-workflow", data={"workflowId": "wf-1"},
                  opts=JobOptions(priority=7, attempts=2, backoff=Backoff(type="fixed", delay=5)))
        job.return_value = {"ok": True}

        restored = Job.from_hash(job.to_hash())

        assert restored.to_dict() == job.to_dict()


class TestMemoryJobQueue:
    @pytest.fixture
    def queue(self):
        return MemoryJobQueue("test", JobOptions(attempts=2, backoff=Backoff(delay=10)))

    async def test_higher_priority_dispatched_first(self, queue):
        low = await queue.add("job", {}, JobOptions(priority=1))
        high = await queue.add("job", {}, JobOptions(priority=10))
        normal = await queue.add("job", {}, JobOptions(priority=5))

        order = [(await queue.fetch_next(timeout=0.1)).id for _ in range(3)]

        assert order == [high.id, normal.id, low.id]

    async def test_same_priority_is_fifo(self, queue):
        ids = [(await queue.add("job", {"n": n})).id for n in range(3)]
        order = [(await queue.fetch_next(timeout=0.1)).id for _ in range(3)]
        assert order == ids

    async def test_fetch_times_out_on_empty_queue(self, queue):
        assert await queue.fetch_next(timeout=0.05) is None

    async def test_complete_records_return_value(self, queue):
        added = await queue.add("job", {})
        job = await queue.fetch_next(timeout=0.1)
        await queue.complete(job, {"answer": 42})

        stored = await queue.get_job(added.id)
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == {"answer": 42}
        assert stored.attempts_made == 1

    async def test_retryable_failure_is_delayed_then_redispatched(self, queue):
        added = await queue.add("job", {})
        job = await queue.fetch_next(timeout=0.1)

        state = await queue.fail(job, "boom", retryable=True)
        assert state == JobState.DELAYED

        retried = await queue.fetch_next(timeout=1.0)
        assert retried.id == added.id
        assert retried.attempts_made == 2

        assert await queue.fail(retried, "boom again") == JobState.FAILED
        assert (await queue.get_job(added.id)).failed_reason == "boom again"

    async def test_non_retryable_failure_skips_remaining_attempts(self, queue):
        added = await queue.add("job", {}, JobOptions(attempts=5))
        job = await queue.fetch_next(timeout=0.1)

        assert await queue.fail(job, "bad input", retryable=False) == JobState.FAILED
        assert (await queue.get_job(added.id)).attempts_made == 1

    async def test_remove_waiting_job(self, queue):
        job = await queue.add("job", {})
        assert await queue.remove(job.id) is True
        assert await queue.get_job(job.id) is None
        assert await queue.fetch_next(timeout=0.05) is None

    async def test_remove_active_or_missing_job_returns_false(self, queue):
        await queue.add("job", {})
        active = await queue.fetch_next(timeout=0.1)

        assert await queue.remove(active.id) is False
        assert await queue.remove("does-not-exist") is False

    async def test_pause_holds_jobs_and_counts_them_paused(self, queue):
        await queue.add("job", {})
        await queue.pause()

        assert await queue.is_paused() is True
        assert await queue.fetch_next(timeout=0.05) is None
        counts = await queue.get_job_counts()
        assert counts["paused"] == 1
        assert counts["waiting"] == 0

        await queue.resume()
        assert await queue.fetch_next(timeout=0.1) is not None

    async def test_delayed_job_waits_for_its_delay(self, queue):
        job = await queue.add("job", {}, JobOptions(delay=100))
        assert job.state == JobState.DELAYED
        assert await queue.fetch_next(timeout=0.02) is None

        fetched = await queue.fetch_next(timeout=1.0)
        assert fetched.id == job.id

    async def test_finished_jobs_are_trimmed(self, queue):
        ids = []
        for _ in range(3):
            ids.append((await queue.add("job", {}, JobOptions(remove_on_complete=1))).id)
            await queue.complete(await queue.fetch_next(timeout=0.1))

        assert await queue.get_job(ids[0]) is None
        assert await queue.get_job(ids[1]) is None
        assert (await queue.get_job(ids[2])).state == JobState.COMPLETED

    async def test_clean_removes_old_finished_jobs(self, queue):
        job = await queue.add("job", {})
        await queue.complete(await queue.fetch_next(timeout=0.1))

        assert await queue.clean(60_000) == 0
        assert await queue.clean(0) == 1
        assert await queue.get_job(job.id) is None

    async def test_remove_all(self, queue):
        for _ in range(3):
            await queue.add("job", {})
        await queue.remove_all()
        assert sum((await queue.get_job_counts()).values()) == 0

    async def test_wait_until_finished(self, queue):
        job = await queue.add("job", {})

        async def finish():
            await asyncio.sleep(0.02)
            await queue.complete(await queue.fetch_next(timeout=0.1), "done")

        asyncio.create_task(finish())
        finished = await queue.wait_until_finished(job.id, timeout=1.0)
        assert finished.return_value == "done"

    async def test_wait_until_finished_times_out(self, queue):
        job = await queue.add("job", {})
        with pytest.raises(asyncio.TimeoutError):
            await queue.wait_until_finished(job.id, timeout=0.05)

    async def test_lifecycle_events_published(self, queue):
        seen = []
        queue.events.subscribe(lambda event, job_id, data: seen.append(event))

        await queue.add("job", {})
        await queue.complete(await queue.fetch_next(timeout=0.1))

        assert seen == ["waiting", "active", "completed"]


class TestRedisJobQueue:
    @pytest.fixture
    async def client(self):
        client = fakeredis.aioredis.FakeRedis(decode_responses=True)
        yield client
        await client.flushall()
        await client.aclose()

    @pytest.fixture
    def queue(self, client):
        return RedisJobQueue(client, "test", JobOptions(attempts=2, backoff=Backoff(delay=10)),
                             key_prefix="autoflow-test")

    async def test_higher_priority_dispatched_first(self, queue):
        low = await queue.add("job", {}, JobOptions(priority=1))
        high = await queue.add("job", {}, JobOptions(priority=10))
        normal = await queue.add("job", {}, JobOptions(priority=5))

        order = [(await queue.fetch_next(timeout=0.5)).id for _ in range(3)]

        assert order == [high.id, normal.id, low.id]

    async def test_same_priority_is_fifo(self, queue):
        ids = [(await queue.add("job", {"n": n})).id for n in range(3)]
        order = [(await queue.fetch_next(timeout=0.5)).id for _ in range(3)]
        assert order == ids

    async def test_job_round_trips_through_redis_hash(self, queue):
        added = await queue.add("execute-workflow", {"workflowId": "wf-1"}, JobOptions(priority=8))

        stored = await queue.get_job(added.id)

        assert stored.data == {"workflowId": "wf-1"}
        assert stored.opts.priority == 8
        assert stored.opts.attempts == 2
        assert stored.state == JobState.WAITING

    async def test_complete_records_return_value(self, queue):
        added = await queue.add("job", {})
        job = await queue.fetch_next(timeout=0.5)
        assert (await queue.get_job_counts())["active"] == 1

        await queue.complete(job, {"answer": 42})

        stored = await queue.get_job(added.id)
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == {"answer": 42}
        assert stored.attempts_made == 1
        counts = await queue.get_job_counts()
        assert counts["active"] == 0
        assert counts["completed"] == 1

    async def test_retryable_failure_is_delayed_then_redispatched(self, queue):
        added = await queue.add("job", {})
        job = await queue.fetch_next(timeout=0.5)

        assert await queue.fail(job, "boom", retryable=True) == JobState.DELAYED
        assert (await queue.get_job_counts())["delayed"] == 1

        retried = await queue.fetch_next(timeout=2.0)
        assert retried.id == added.id
        assert retried.attempts_made == 2

        assert await queue.fail(retried, "boom again") == JobState.FAILED
        stored = await queue.get_job(added.id)
        assert stored.failed_reason == "boom again"
        assert (await queue.get_job_counts())["failed"] == 1

    async def test_non_retryable_failure_skips_remaining_attempts(self, queue):
        added = await queue.add("job", {}, JobOptions(attempts=5))
        job = await queue.fetch_next(timeout=0.5)

        assert await queue.fail(job, "bad input", retryable=False) == JobState.FAILED
        assert (await queue.get_job(added.id)).attempts_made == 1

    async def test_delayed_job_waits_for_its_delay(self, queue):
        job = await queue.add("job", {}, JobOptions(delay=100))
        assert job.state == JobState.DELAYED
        assert await queue.fetch_next(timeout=0.02) is None

        fetched = await queue.fetch_next(timeout=2.0)
        assert fetched.id == job.id

    async def test_remove_waiting_job(self, queue):
        job = await queue.add("job", {})
        assert await queue.remove(job.id) is True
        assert await queue.get_job(job.id) is None
        assert await queue.fetch_next(timeout=0.05) is None

    async def test_remove_active_or_missing_job_returns_false(self, queue):
        await queue.add("job", {})
        active = await queue.fetch_next(timeout=0.5)

        assert await queue.remove(active.id) is False
        assert await queue.remove("does-not-exist") is False

    async def test_pause_holds_jobs_and_counts_them_paused(self, queue):
        await queue.add("job", {})
        await queue.pause()

        assert await queue.is_paused() is True
        assert await queue.fetch_next(timeout=0.05) is None
        counts = await queue.get_job_counts()
        assert counts["paused"] == 1
        assert counts["waiting"] == 0

        await queue.resume()
        assert await queue.fetch_next(timeout=0.5) is not None

    async def test_finished_jobs_are_trimmed(self, queue):
        ids = []
        for _ in range(3):
            ids.append((await queue.add("job", {}, JobOptions(remove_on_complete=1))).id)
            await queue.complete(await queue.fetch_next(timeout=0.5))
            # distinct finish timestamps keep the completed set ordered
            await asyncio.sleep(0.005)

        assert await queue.get_job(ids[0]) is None
        assert await queue.get_job(ids[1]) is None
        assert (await queue.get_job(ids[2])).state == JobState.COMPLETED

    async def test_clean_removes_old_finished_jobs(self, queue):
        job = await queue.add("job", {})
        await queue.complete(await queue.fetch_next(timeout=0.5))

        assert await queue.clean(60_000) == 0
        assert await queue.clean(0) == 1
        assert await queue.get_job(job.id) is None

    async def test_clean_rejects_unfinished_state(self, queue):
        with pytest.raises(ValueError):
            await queue.clean(0, JobState.WAITING)

    async def test_remove_all_only_touches_this_queue(self, client, queue):
        other = RedisJobQueue(client, "other", key_prefix="autoflow-test")
        await other.add("job", {})
        for _ in range(3):
            await queue.add("job", {})

        await queue.remove_all()

        assert sum((await queue.get_job_counts()).values()) == 0
        assert (await other.get_job_counts())["waiting"] == 1

    async def test_wait_until_finished(self, queue):
        job = await queue.add("job", {})

        async def finish():
            await asyncio.sleep(0.02)
            await queue.complete(await queue.fetch_next(timeout=0.5), "done")

        task = asyncio.create_task(finish())
        finished = await queue.wait_until_finished(job.id, timeout=2.0)
        await task
        assert finished.return_value == "done"

    async def test_wait_until_finished_times_out(self, queue):
        job = await queue.add("job", {})
        with pytest.raises(asyncio.TimeoutError):
            await queue.wait_until_finished(job.id, timeout=0.05)

    async def test_lifecycle_events_published_to_stream(self, client, queue):
        seen = []
        queue.events.subscribe(lambda event, job_id, data: seen.append(event))

        job = await queue.add("job", {})
        await queue.complete(await queue.fetch_next(timeout=0.5))

        assert seen == ["waiting", "active", "completed"]
        entries = await client.xrange("autoflow-test:test:events")
        assert [fields["event"] for _, fields in entries] == ["waiting", "active", "completed"]
        assert {fields["jobId"] for _, fields in entries} == {job.id}
