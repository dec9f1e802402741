"""
MathPulse Worker – Durable Job Queue on Redis.

Each named queue keeps its jobs in Redis so that a restart of the worker
process loses nothing that was enqueued:

    {prefix}:{queue}:id          INCR counter for job ids
    {prefix}:{queue}:job:{id}    hash with the job record
    {prefix}:{queue}:waiting     ZSET job id -> nextAttemptAt (epoch seconds)
    {prefix}:{queue}:active      ZSET job id -> leasedAt
    {prefix}:{queue}:completed   LIST of finished job ids, newest first
    {prefix}:{queue}:failed      LIST of exhausted job ids, newest first

A job is leased in one WATCH/MULTI transaction that moves its id from
`waiting` to `active`. A concurrent change to `waiting` aborts the
transaction, so at most one worker holds a lease on a job at any time and
every live job sits in exactly one of the two sets.

Retry policy is an explicit per-job state machine: `nack` bumps the
attempt counter and either puts the job back into `waiting` scored at
now + backoff, or marks it `failed` once `maxAttempts` is reached.
"""

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

logger = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobNotFound(Exception):
    """Raised when a job id has no record (never enqueued, or pruned)."""


def _opt_float(value: str | None) -> float | None:
    return float(value) if value not in (None, "") else None


@dataclass
class Job:
    id: str
    queue_name: str
    name: str
    payload: dict[str, Any]
    attempt_count: int = 0
    max_attempts: int = 3
    status: JobState = JobState.WAITING
    next_attempt_at: float = 0.0
    created_at: float = 0.0
    leased_at: float | None = None
    finished_at: float | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = field(default=None)

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)

    def to_hash(self) -> dict[str, str]:
        return {
            "id": self.id,
            "queueName": self.queue_name,
            "name": self.name,
            "payload": json.dumps(self.payload),
            "attemptCount": str(self.attempt_count),
            "maxAttempts": str(self.max_attempts),
            "status": self.status.value,
            "nextAttemptAt": str(self.next_attempt_at),
            "createdAt": str(self.created_at),
            "leasedAt": "" if self.leased_at is None else str(self.leased_at),
            "finishedAt": "" if self.finished_at is None else str(self.finished_at),
            "lastError": self.last_error or "",
            "result": "" if self.result is None else json.dumps(self.result),
        }

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> "Job":
        return cls(
            id=data["id"],
            queue_name=data["queueName"],
            name=data["name"],
            payload=json.loads(data["payload"]),
            attempt_count=int(data.get("attemptCount", 0)),
            max_attempts=int(data.get("maxAttempts", 3)),
            status=JobState(data["status"]),
            next_attempt_at=float(data.get("nextAttemptAt", 0.0)),
            created_at=float(data.get("createdAt", 0.0)),
            leased_at=_opt_float(data.get("leasedAt")),
            finished_at=_opt_float(data.get("finishedAt")),
            last_error=data.get("lastError") or None,
            result=json.loads(data["result"]) if data.get("result") else None,
        )


class JobQueue:
    """
    A named, durable, ordered set of jobs for one kind of work.

    Jobs become eligible in `nextAttemptAt` order, so retries that are
    backing off never block fresh jobs queued behind them.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        name: str,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
        key_prefix: str = "mathpulse:queue",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self._prefix = f"{key_prefix}:{name}"
        self._clock = clock

    # ── Keys ─────────────────────────────────────────────────────
    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def backoff_delay(self, attempt_count: int) -> float:
        """Delay before the next attempt after `attempt_count` failures."""
        return self.backoff_base_seconds * (2 ** (attempt_count - 1))

    # ── Producer side ────────────────────────────────────────────
    async def enqueue(self, job_name: str, payload: dict[str, Any]) -> Job:
        job_id = str(await self._redis.incr(self._key("id")))
        now = self._clock()
        job = Job(
            id=job_id,
            queue_name=self.name,
            name=job_name,
            payload=payload,
            max_attempts=self.max_attempts,
            next_attempt_at=now,
            created_at=now,
        )

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping=job.to_hash())
            pipe.zadd(self._key("waiting"), {job_id: now})
            await pipe.execute()

        logger.info(f"Enqueued {job_name} job {job_id} on {self.name}")
        return job

    async def get(self, job_id: str) -> Job:
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            raise JobNotFound(f"Job {job_id} not found on {self.name}")
        return Job.from_hash(data)

    # ── Consumer side ────────────────────────────────────────────
    async def try_lease(self) -> Optional[Job]:
        """Claim the oldest due job, or return None if nothing is due."""
        now = self._clock()
        waiting = self._key("waiting")

        # The claim (leave `waiting`) and the lease (enter `active`) commit
        # together, so a crash never leaves a job outside both sets.
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(waiting)
                    candidates = await pipe.zrangebyscore(waiting, "-inf", now, start=0, num=1)
                    if not candidates:
                        return None
                    job_id = candidates[0]

                    pipe.multi()
                    pipe.zrem(waiting, job_id)
                    pipe.zadd(self._key("active"), {job_id: now})
                    pipe.hset(
                        self._job_key(job_id),
                        mapping={"status": JobState.ACTIVE.value, "leasedAt": str(now)},
                    )
                    await pipe.execute()
                    break
                except WatchError:
                    # `waiting` changed under us (another lease, an enqueue); look again.
                    continue

        return await self.get(job_id)

    async def lease(
        self,
        poll_interval: float = 0.5,
        stop_event: asyncio.Event | None = None,
    ) -> Optional[Job]:
        """
        Block until a job is leased or `stop_event` is set.

        Returns None only when stopping.
        """
        while True:
            if stop_event is not None and stop_event.is_set():
                return None

            job = await self.try_lease()
            if job is not None:
                return job

            if stop_event is None:
                await asyncio.sleep(poll_interval)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue

    async def ack(self, job_id: str, result: dict[str, Any] | None = None) -> Job:
        job = await self.get(job_id)
        if job.status in (JobState.COMPLETED, JobState.FAILED):
            logger.warning(f"Ignoring ack for {job.status.value} job {job_id} on {self.name}")
            return job

        now = self._clock()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("active"), job_id)
            pipe.zrem(self._key("waiting"), job_id)
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "status": JobState.COMPLETED.value,
                    "finishedAt": str(now),
                    "result": "" if result is None else json.dumps(result),
                },
            )
            pipe.lpush(self._key("completed"), job_id)
            await pipe.execute()

        await self._trim(self._key("completed"), self.keep_completed)
        job.status = JobState.COMPLETED
        job.finished_at = now
        job.result = result
        return job

    async def nack(self, job_id: str, error: str) -> Job:
        """
        Record a failed attempt.

        The job goes back to `waiting` with an exponential delay while
        attempts remain; otherwise it is marked `failed` for good.
        """
        job = await self.get(job_id)
        if job.status is not JobState.ACTIVE:
            logger.warning(f"Ignoring nack for {job.status.value} job {job_id} on {self.name}")
            return job

        attempts = await self._redis.hincrby(self._job_key(job_id), "attemptCount", 1)
        now = self._clock()

        if attempts < job.max_attempts:
            next_at = now + self.backoff_delay(attempts)
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key("active"), job_id)
                pipe.hset(
                    self._job_key(job_id),
                    mapping={
                        "status": JobState.WAITING.value,
                        "nextAttemptAt": str(next_at),
                        "leasedAt": "",
                        "lastError": error,
                    },
                )
                pipe.zadd(self._key("waiting"), {job_id: next_at})
                await pipe.execute()
            logger.warning(
                f"Job {job_id} on {self.name} failed attempt {attempts}/{job.max_attempts}, "
                f"retrying in {next_at - now:.1f}s: {error}"
            )
        else:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key("active"), job_id)
                pipe.hset(
                    self._job_key(job_id),
                    mapping={
                        "status": JobState.FAILED.value,
                        "finishedAt": str(now),
                        "lastError": error,
                    },
                )
                pipe.lpush(self._key("failed"), job_id)
                await pipe.execute()
            await self._trim(self._key("failed"), self.keep_failed)
            logger.error(
                f"Job {job_id} on {self.name} failed permanently after {attempts} attempts: {error}"
            )

        return await self.get(job_id)

    # ── Housekeeping ─────────────────────────────────────────────
    async def requeue_stalled(self, older_than_seconds: float) -> int:
        """
        Return leases older than `older_than_seconds` to `waiting`.

        A lease this old belongs to a worker that died mid-job. The attempt
        counter is left alone since the attempt never reported back.
        """
        cutoff = self._clock() - older_than_seconds
        stalled = await self._redis.zrangebyscore(self._key("active"), "-inf", cutoff)
        requeued = 0

        for job_id in stalled:
            if not await self._redis.zrem(self._key("active"), job_id):
                continue
            now = self._clock()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._job_key(job_id),
                    mapping={
                        "status": JobState.WAITING.value,
                        "leasedAt": "",
                        "nextAttemptAt": str(now),
                    },
                )
                pipe.zadd(self._key("waiting"), {job_id: now})
                await pipe.execute()
            requeued += 1

        if requeued:
            logger.warning(f"Requeued {requeued} stalled job(s) on {self.name}")
        return requeued

    async def counts(self) -> dict[str, int]:
        now = self._clock()
        waiting = self._key("waiting")
        return {
            "waiting": await self._redis.zcount(waiting, "-inf", now),
            "delayed": await self._redis.zcount(waiting, f"({now}", "+inf"),
            "active": await self._redis.zcard(self._key("active")),
            "completed": await self._redis.llen(self._key("completed")),
            "failed": await self._redis.llen(self._key("failed")),
        }

    async def _trim(self, list_key: str, keep: int) -> None:
        """Drop finished job records beyond the newest `keep`."""
        keep = max(keep, 0)
        stale = await self._redis.lrange(list_key, keep, -1)
        if not stale:
            return

        async with self._redis.pipeline(transaction=True) as pipe:
            if keep == 0:
                pipe.delete(list_key)
            else:
                pipe.ltrim(list_key, 0, keep - 1)
            pipe.delete(*[self._job_key(job_id) for job_id in stale])
            await pipe.execute()
