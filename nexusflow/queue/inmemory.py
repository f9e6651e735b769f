"""In-memory queue backend for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .base import BaseQueueBackend
from .models import JobOptions, JobState, QueueCounts, QueueJob, RetentionPolicy, StalledJob


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryQueueBackend(BaseQueueBackend):
    """Simple in-process queue honoring priority, backoff and locks."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Dict[str, QueueJob]] = defaultdict(dict)
        self._order: Dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()
        self._closed = False

    async def connect(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConnectionError("Queue backend is closed")

    @staticmethod
    def _holds_lock(stored: Optional[QueueJob], job: QueueJob) -> bool:
        return (
            stored is not None
            and stored.state == JobState.ACTIVE
            and stored.lock_token == job.lock_token
        )

    # ------------------------------------------------------------------
    async def enqueue(
        self, queue_name: str, job_name: str, data: dict, options: Optional[JobOptions] = None
    ) -> QueueJob:
        self._ensure_open()
        opts = options or JobOptions()
        job = QueueJob.new(queue_name, job_name, data, opts)
        if opts.delay_ms > 0:
            job.state = JobState.DELAYED
            job.available_at = _now() + timedelta(milliseconds=opts.delay_ms)
        async with self._lock:
            existing = self._jobs[queue_name].get(job.id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._jobs[queue_name][job.id] = job
            self._order[job.id] = next(self._seq)
        return job.model_copy(deep=True)

    async def claim(
        self, queue_name: str, worker_id: str, lock_duration_ms: int
    ) -> Optional[QueueJob]:
        self._ensure_open()
        async with self._lock:
            now = _now()
            candidates = []
            for job in self._jobs[queue_name].values():
                if job.state == JobState.DELAYED and job.available_at and job.available_at <= now:
                    job.state = JobState.WAITING
                if job.state == JobState.WAITING:
                    candidates.append(job)
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.opts.priority, self._order[j.id]))
            job.lock_for(worker_id, lock_duration_ms)
            return job.model_copy(deep=True)

    async def extend_lock(self, job: QueueJob, lock_duration_ms: int) -> bool:
        async with self._lock:
            stored = self._jobs[job.queue].get(job.id)
            if not self._holds_lock(stored, job):
                return False
            stored.lock_expires_at = _now() + timedelta(milliseconds=lock_duration_ms)
            return True

    async def complete(self, job: QueueJob, return_value: Any = None) -> bool:
        async with self._lock:
            stored = self._jobs[job.queue].get(job.id)
            if not self._holds_lock(stored, job):
                return False
            stored.record_completion(return_value)
            self._prune(job.queue, JobState.COMPLETED, stored.opts.remove_on_complete)
            return True

    async def fail(
        self,
        job: QueueJob,
        error: str,
        stack: Optional[str] = None,
        retryable: bool = True,
    ) -> Optional[QueueJob]:
        async with self._lock:
            stored = self._jobs[job.queue].get(job.id)
            if not self._holds_lock(stored, job):
                return None
            final = stored.record_failure(error, stack, retryable)
            if final:
                self._prune(job.queue, JobState.FAILED, stored.opts.remove_on_fail)
            return stored.model_copy(deep=True)

    async def recover_stalled(
        self, queue_name: str, max_stalled_count: int
    ) -> List[StalledJob]:
        recovered: List[StalledJob] = []
        async with self._lock:
            now = _now()
            for job in self._jobs[queue_name].values():
                if job.state != JobState.ACTIVE or not job.lock_expires_at:
                    continue
                if job.lock_expires_at > now:
                    continue
                job.stalled_count += 1
                job.release_lock()
                if job.stalled_count > max_stalled_count:
                    job.state = JobState.FAILED
                    job.failed_reason = "job stalled more than allowable limit"
                    job.finished_on = now
                    recovered.append(StalledJob(job=job.model_copy(deep=True), final=True))
                else:
                    job.state = JobState.WAITING
                    recovered.append(StalledJob(job=job.model_copy(deep=True), final=False))
        return recovered

    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        job = self._jobs[queue_name].get(job_id)
        return job.model_copy(deep=True) if job else None

    async def remove_job(self, queue_name: str, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs[queue_name].get(job_id)
            if job is None or job.state == JobState.ACTIVE:
                return False
            del self._jobs[queue_name][job_id]
            self._order.pop(job_id, None)
            return True

    async def counts(self, queue_name: str) -> QueueCounts:
        counts = QueueCounts()
        for job in self._jobs[queue_name].values():
            setattr(counts, job.state.value, getattr(counts, job.state.value) + 1)
        return counts

    # ------------------------------------------------------------------
    def _prune(self, queue_name: str, state: JobState, policy: RetentionPolicy) -> None:
        finished = sorted(
            (j for j in self._jobs[queue_name].values() if j.state == state),
            key=lambda j: j.finished_on or j.timestamp,
            reverse=True,
        )
        cutoff = _now() - timedelta(seconds=policy.age_seconds) if policy.age_seconds else None
        for index, job in enumerate(finished):
            too_many = policy.count is not None and index >= policy.count
            too_old = cutoff is not None and (job.finished_on or job.timestamp) < cutoff
            if too_many or too_old:
                del self._jobs[queue_name][job.id]
                self._order.pop(job.id, None)
