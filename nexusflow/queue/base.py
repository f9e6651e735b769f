"""Base interface for durable job queue backends."""

from __future__ import annotations

import abc
from typing import Any, List, Optional

from .models import JobOptions, QueueCounts, QueueJob, StalledJob


class BaseQueueBackend(metaclass=abc.ABCMeta):
    """Abstract at-least-once job queue with retry, backoff and job locks."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def close(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def enqueue(
        self, queue_name: str, job_name: str, data: dict, options: Optional[JobOptions] = None
    ) -> QueueJob:
        """Add a job to ``queue_name`` and return the stored job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def claim(
        self, queue_name: str, worker_id: str, lock_duration_ms: int
    ) -> Optional[QueueJob]:
        """Lock and return the next available job, or ``None``.

        Jobs with a lower ``priority`` value are preferred; equal priorities
        are served in enqueue order. Delayed retries become available once
        their backoff has elapsed.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def extend_lock(self, job: QueueJob, lock_duration_ms: int) -> bool:
        """Extend the lock held on ``job``; ``False`` if the lock was lost."""
        raise NotImplementedError

    @abc.abstractmethod
    async def complete(self, job: QueueJob, return_value: Any = None) -> bool:
        """Mark an active job completed; ``False`` if the lock was lost."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fail(
        self,
        job: QueueJob,
        error: str,
        stack: Optional[str] = None,
        retryable: bool = True,
    ) -> Optional[QueueJob]:
        """Record a failed attempt.

        The job is rescheduled with backoff while attempts remain and the
        error is retryable, otherwise it moves to the failed set. Returns the
        updated job, or ``None`` when the lock was already lost.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def recover_stalled(
        self, queue_name: str, max_stalled_count: int
    ) -> List[StalledJob]:
        """Return expired-lock jobs to the queue, failing repeat offenders."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[QueueJob]:
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_job(self, queue_name: str, job_id: str) -> bool:
        """Remove a job that is not currently locked by a worker."""
        raise NotImplementedError

    @abc.abstractmethod
    async def counts(self, queue_name: str) -> QueueCounts:
        raise NotImplementedError
