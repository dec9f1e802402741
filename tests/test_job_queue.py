import asyncio

import pytest

from queueing.job_queue import JobNotFound, JobQueue, JobState

pytestmark = pytest.mark.anyio


@pytest.fixture
def queue(redis_client, clock):
    return JobQueue(redis_client, "problem-generation", clock=clock)


async def test_enqueue_then_lease_returns_active_job(queue):
    job = await queue.enqueue("generate-problem", {"sessionId": "s1"})

    leased = await queue.try_lease()

    assert leased.id == job.id
    assert leased.status is JobState.ACTIVE
    assert leased.payload == {"sessionId": "s1"}
    assert leased.attempt_count == 0
    assert await queue.try_lease() is None


async def test_only_one_concurrent_lease_wins(queue):
    await queue.enqueue("generate-problem", {"sessionId": "s1"})

    leases = await asyncio.gather(*(queue.try_lease() for _ in range(5)))

    assert len([job for job in leases if job is not None]) == 1


async def test_ack_marks_completed(queue):
    job = await queue.enqueue("generate-problem", {})
    await queue.try_lease()

    done = await queue.ack(job.id, {"sessionId": "s1"})

    assert done.status is JobState.COMPLETED
    stored = await queue.get(job.id)
    assert stored.status is JobState.COMPLETED
    assert stored.result == {"sessionId": "s1"}
    counts = await queue.counts()
    assert counts["active"] == 0
    assert counts["completed"] == 1


async def test_backoff_delays_double_until_attempts_are_exhausted(queue, clock):
    assert queue.backoff_delay(1) == 2.0
    assert queue.backoff_delay(2) == 4.0

    job = await queue.enqueue("generate-problem", {})

    await queue.try_lease()
    first = await queue.nack(job.id, "boom")
    assert first.status is JobState.WAITING
    assert first.attempt_count == 1
    assert first.next_attempt_at == clock() + 2.0
    assert first.last_error == "boom"
    assert await queue.try_lease() is None
    assert (await queue.counts())["delayed"] == 1

    clock.advance(2.0)
    assert (await queue.try_lease()).id == job.id
    second = await queue.nack(job.id, "boom again")
    assert second.attempt_count == 2
    assert second.next_attempt_at == clock() + 4.0

    clock.advance(3.9)
    assert await queue.try_lease() is None
    clock.advance(0.1)
    assert (await queue.try_lease()).id == job.id

    last = await queue.nack(job.id, "still broken")
    assert last.status is JobState.FAILED
    assert last.attempt_count == 3
    counts = await queue.counts()
    assert counts["failed"] == 1
    assert counts["waiting"] == counts["delayed"] == counts["active"] == 0


async def test_backing_off_retry_does_not_block_fresh_jobs(queue):
    retried = await queue.enqueue("generate-problem", {"n": 1})
    await queue.try_lease()
    await queue.nack(retried.id, "boom")

    fresh = await queue.enqueue("generate-problem", {"n": 2})

    assert (await queue.try_lease()).id == fresh.id


async def test_nack_of_finished_job_is_ignored(queue):
    job = await queue.enqueue("generate-problem", {})
    await queue.try_lease()
    await queue.ack(job.id)

    again = await queue.nack(job.id, "late failure")

    assert again.status is JobState.COMPLETED
    assert again.attempt_count == 0


async def test_finished_jobs_are_pruned_beyond_retention(redis_client, clock):
    queue = JobQueue(redis_client, "feedback-generation", keep_completed=2, clock=clock)
    ids = []
    for n in range(3):
        job = await queue.enqueue("generate-feedback", {"n": n})
        ids.append(job.id)
        await queue.try_lease()
        await queue.ack(job.id)

    assert (await queue.counts())["completed"] == 2
    with pytest.raises(JobNotFound):
        await queue.get(ids[0])
    assert (await queue.get(ids[2])).status is JobState.COMPLETED


async def test_failed_jobs_are_pruned_beyond_retention(redis_client, clock):
    queue = JobQueue(redis_client, "feedback-generation", max_attempts=1, keep_failed=1, clock=clock)
    first = await queue.enqueue("generate-feedback", {})
    await queue.try_lease()
    await queue.nack(first.id, "boom")
    second = await queue.enqueue("generate-feedback", {})
    await queue.try_lease()
    await queue.nack(second.id, "boom")

    assert (await queue.counts())["failed"] == 1
    with pytest.raises(JobNotFound):
        await queue.get(first.id)


async def test_stalled_lease_is_returned_to_waiting(queue, clock):
    job = await queue.enqueue("generate-problem", {})
    await queue.try_lease()

    clock.advance(100)
    assert await queue.requeue_stalled(300) == 0

    clock.advance(201)
    assert await queue.requeue_stalled(300) == 1

    stored = await queue.get(job.id)
    assert stored.status is JobState.WAITING
    assert stored.attempt_count == 0
    assert (await queue.try_lease()).id == job.id


async def test_get_unknown_job_raises(queue):
    with pytest.raises(JobNotFound):
        await queue.get("404")


async def test_lease_waits_for_a_job(queue):
    waiter = asyncio.create_task(queue.lease(poll_interval=0.01))
    await asyncio.sleep(0.03)
    job = await queue.enqueue("generate-problem", {"late": True})

    leased = await asyncio.wait_for(waiter, timeout=2.0)

    assert leased.id == job.id


async def test_lease_returns_none_when_stopping(queue):
    stop = asyncio.Event()
    stop.set()

    assert await queue.lease(poll_interval=0.01, stop_event=stop) is None


async def test_contended_leases_move_every_job_to_active_exactly_once(queue, redis_client):
    jobs = [await queue.enqueue("generate-problem", {"n": n}) for n in range(10)]

    leases = await asyncio.gather(*(queue.try_lease() for _ in range(20)))

    leased_ids = [job.id for job in leases if job is not None]
    assert sorted(leased_ids, key=int) == [job.id for job in jobs]
    assert await redis_client.zcard("mathpulse:queue:problem-generation:waiting") == 0
    assert await redis_client.zcard("mathpulse:queue:problem-generation:active") == 10


async def test_lease_is_one_transaction(queue, redis_client):
    job = await queue.enqueue("generate-problem", {})

    await queue.try_lease()

    assert await redis_client.zscore("mathpulse:queue:problem-generation:waiting", job.id) is None
    assert await redis_client.zscore("mathpulse:queue:problem-generation:active", job.id) is not None
    assert (await queue.get(job.id)).status is JobState.ACTIVE
