"""Redis queue backend for cross-process job distribution."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .base import BaseQueueBackend
from .models import JobOptions, JobState, QueueCounts, QueueJob, RetentionPolicy, StalledJob

logger = logging.getLogger(__name__)

# Promote due delayed jobs, then pop the best waiting job and lock it.
CLAIM_SCRIPT = """
local waiting, delayed, active, priorities, seq = KEYS[1], KEYS[2], KEYS[3], KEYS[4], KEYS[5]
local now = tonumber(ARGV[1])
local lock_ms = tonumber(ARGV[2])
local due = redis.call('ZRANGEBYSCORE', delayed, '-inf', now)
for _, id in ipairs(due) do
  redis.call('ZREM', delayed, id)
  local prio = tonumber(redis.call('HGET', priorities, id) or '0')
  redis.call('ZADD', waiting, prio * 1000000000000 + redis.call('INCR', seq), id)
end
local popped = redis.call('ZPOPMIN', waiting)
if #popped == 0 then
  return false
end
redis.call('ZADD', active, now + lock_ms, popped[1])
return popped[1]
"""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisQueueBackend(BaseQueueBackend):
    """Redis-based queue using sorted sets for waiting, delayed and active jobs.

    Key layout per queue ``q``: ``{prefix}:{q}:jobs`` (hash of job JSON),
    ``:waiting`` (score = priority then sequence), ``:delayed`` (score = due
    time), ``:active`` (score = lock expiry), ``:completed`` and ``:failed``
    (score = finish time), ``:priority`` and ``:seq`` bookkeeping.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
        prefix: str = "nexusflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisQueueBackend")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self.prefix = prefix
        self._redis: Optional[Any] = None
        self._claim_script: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.url:
            self._redis = redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()
        self._claim_script = self._redis.register_script(CLAIM_SCRIPT)
        logger.info("Redis queue backend connected")

    async def close(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._claim_script = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    def key(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:{queue_name}:{suffix}"

    async def _load(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        client = await self._client()
        raw = await client.hget(self.key(queue_name, "jobs"), job_id)
        return QueueJob.from_json(raw) if raw else None

    async def _holds_lock(self, job: QueueJob) -> Optional[QueueJob]:
        stored = await self._load(job.queue, job.id)
        if stored is None or stored.state != JobState.ACTIVE:
            return None
        if stored.lock_token != job.lock_token:
            return None
        return stored

    # ------------------------------------------------------------------
    async def enqueue(
        self, queue_name: str, job_name: str, data: dict, options: Optional[JobOptions] = None
    ) -> QueueJob:
        client = await self._client()
        opts = options or JobOptions()
        job = QueueJob.new(queue_name, job_name, data, opts)
        if opts.job_id:
            existing = await self._load(queue_name, job.id)
            if existing is not None:
                return existing
        seq = await client.incr(self.key(queue_name, "seq"))
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self.key(queue_name, "priority"), job.id, opts.priority)
            if opts.delay_ms > 0:
                job.state = JobState.DELAYED
                job.available_at = _now() + timedelta(milliseconds=opts.delay_ms)
                pipe.zadd(self.key(queue_name, "delayed"), {job.id: _ms(job.available_at)})
            else:
                pipe.zadd(
                    self.key(queue_name, "waiting"),
                    {job.id: opts.priority * 1_000_000_000_000 + seq},
                )
            pipe.hset(self.key(queue_name, "jobs"), job.id, job.to_json())
            await pipe.execute()
        return job

    async def claim(
        self, queue_name: str, worker_id: str, lock_duration_ms: int
    ) -> Optional[QueueJob]:
        client = await self._client()
        job_id = await self._claim_script(
            keys=[
                self.key(queue_name, "waiting"),
                self.key(queue_name, "delayed"),
                self.key(queue_name, "active"),
                self.key(queue_name, "priority"),
                self.key(queue_name, "seq"),
            ],
            args=[_ms(_now()), lock_duration_ms],
        )
        if not job_id:
            return None
        job = await self._load(queue_name, job_id)
        if job is None:
            await client.zrem(self.key(queue_name, "active"), job_id)
            return None
        job.lock_for(worker_id, lock_duration_ms)
        await client.hset(self.key(queue_name, "jobs"), job.id, job.to_json())
        return job

    async def extend_lock(self, job: QueueJob, lock_duration_ms: int) -> bool:
        stored = await self._holds_lock(job)
        if stored is None:
            return False
        client = await self._client()
        stored.lock_expires_at = _now() + timedelta(milliseconds=lock_duration_ms)
        async with client.pipeline(transaction=True) as pipe:
            pipe.zadd(self.key(job.queue, "active"), {job.id: _ms(stored.lock_expires_at)})
            pipe.hset(self.key(job.queue, "jobs"), job.id, stored.to_json())
            await pipe.execute()
        return True

    async def complete(self, job: QueueJob, return_value: Any = None) -> bool:
        stored = await self._holds_lock(job)
        if stored is None:
            return False
        client = await self._client()
        stored.record_completion(return_value)
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(self.key(job.queue, "active"), job.id)
            pipe.zadd(self.key(job.queue, "completed"), {job.id: _ms(stored.finished_on)})
            pipe.hset(self.key(job.queue, "jobs"), job.id, stored.to_json())
            await pipe.execute()
        await self._prune(job.queue, "completed", stored.opts.remove_on_complete)
        return True

    async def fail(
        self,
        job: QueueJob,
        error: str,
        stack: Optional[str] = None,
        retryable: bool = True,
    ) -> Optional[QueueJob]:
        stored = await self._holds_lock(job)
        if stored is None:
            return None
        client = await self._client()
        final = stored.record_failure(error, stack, retryable)
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(self.key(job.queue, "active"), job.id)
            if final:
                pipe.zadd(self.key(job.queue, "failed"), {job.id: _ms(stored.finished_on)})
            else:
                pipe.zadd(self.key(job.queue, "delayed"), {job.id: _ms(stored.available_at)})
            pipe.hset(self.key(job.queue, "jobs"), job.id, stored.to_json())
            await pipe.execute()
        if final:
            await self._prune(job.queue, "failed", stored.opts.remove_on_fail)
        return stored

    async def recover_stalled(
        self, queue_name: str, max_stalled_count: int
    ) -> List[StalledJob]:
        client = await self._client()
        now = _now()
        expired = await client.zrangebyscore(self.key(queue_name, "active"), "-inf", _ms(now))
        recovered: List[StalledJob] = []
        for job_id in expired:
            removed = await client.zrem(self.key(queue_name, "active"), job_id)
            if not removed:
                continue
            job = await self._load(queue_name, job_id)
            if job is None:
                continue
            job.stalled_count += 1
            job.release_lock()
            final = job.stalled_count > max_stalled_count
            if final:
                job.state = JobState.FAILED
                job.failed_reason = "job stalled more than allowable limit"
                job.finished_on = now
                await client.zadd(self.key(queue_name, "failed"), {job.id: _ms(now)})
            else:
                job.state = JobState.WAITING
                seq = await client.incr(self.key(queue_name, "seq"))
                await client.zadd(
                    self.key(queue_name, "waiting"),
                    {job.id: job.opts.priority * 1_000_000_000_000 + seq},
                )
            await client.hset(self.key(queue_name, "jobs"), job.id, job.to_json())
            logger.warning(f"Recovered stalled job {job.id} on {queue_name} (final={final})")
            recovered.append(StalledJob(job=job, final=final))
        return recovered

    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        return await self._load(queue_name, job_id)

    async def remove_job(self, queue_name: str, job_id: str) -> bool:
        job = await self._load(queue_name, job_id)
        if job is None or job.state == JobState.ACTIVE:
            return False
        await self._delete(queue_name, [job_id])
        return True

    async def counts(self, queue_name: str) -> QueueCounts:
        client = await self._client()
        async with client.pipeline(transaction=False) as pipe:
            for state in ("waiting", "active", "delayed", "completed", "failed"):
                pipe.zcard(self.key(queue_name, state))
            waiting, active, delayed, completed, failed = await pipe.execute()
        return QueueCounts(
            waiting=waiting, active=active, delayed=delayed, completed=completed, failed=failed
        )

    # ------------------------------------------------------------------
    async def _delete(self, queue_name: str, job_ids: List[str]) -> None:
        if not job_ids:
            return
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            for state in ("waiting", "delayed", "completed", "failed"):
                pipe.zrem(self.key(queue_name, state), *job_ids)
            pipe.hdel(self.key(queue_name, "jobs"), *job_ids)
            pipe.hdel(self.key(queue_name, "priority"), *job_ids)
            await pipe.execute()

    async def _prune(self, queue_name: str, state: str, policy: RetentionPolicy) -> None:
        client = await self._client()
        key = self.key(queue_name, state)
        doomed: List[str] = []
        if policy.age_seconds:
            cutoff = _ms(_now() - timedelta(seconds=policy.age_seconds))
            doomed.extend(await client.zrangebyscore(key, "-inf", f"({cutoff}"))
        if policy.count is not None:
            doomed.extend(await client.zrevrange(key, policy.count, -1))
        await self._delete(queue_name, sorted(set(doomed)))
