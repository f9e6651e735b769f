"""Job envelopes and options exchanged with queue backends."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..config import JobDefaultsConfig
from ..utils.retry import compute_backoff


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffPolicy(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = 2000

    def delay_for(self, attempt: int) -> int:
        return compute_backoff(attempt, delay_ms=self.delay_ms, kind=self.type)


class RetentionPolicy(BaseModel):
    """How many finished jobs to keep, and for how long."""

    count: Optional[int] = None
    age_seconds: Optional[int] = None


class JobOptions(BaseModel):
    job_id: Optional[str] = None
    priority: int = 0
    timeout_ms: Optional[int] = None
    attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    delay_ms: int = 0
    remove_on_complete: RetentionPolicy = Field(
        default_factory=lambda: RetentionPolicy(count=100, age_seconds=24 * 3600)
    )
    remove_on_fail: RetentionPolicy = Field(default_factory=lambda: RetentionPolicy(count=1000))

    @classmethod
    def from_defaults(cls, defaults: JobDefaultsConfig, **overrides: Any) -> "JobOptions":
        base = cls(
            attempts=defaults.attempts,
            backoff=BackoffPolicy(**defaults.backoff.model_dump()),
            remove_on_complete=RetentionPolicy(**defaults.remove_on_complete.model_dump()),
            remove_on_fail=RetentionPolicy(**defaults.remove_on_fail.model_dump()),
        )
        return base.model_copy(update=overrides)


class QueueJob(BaseModel):
    """A job as stored by a queue backend."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    queue: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    opts: JobOptions = Field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    progress: Any = None
    return_value: Any = None
    failed_reason: Optional[str] = None
    stacktrace: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)
    available_at: Optional[datetime] = None
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    worker_id: Optional[str] = None
    lock_token: Optional[str] = None
    lock_expires_at: Optional[datetime] = None

    @classmethod
    def new(cls, queue: str, name: str, data: dict, opts: JobOptions) -> "QueueJob":
        ident = {"id": opts.job_id} if opts.job_id else {}
        return cls(queue=queue, name=name, data=data, opts=opts, **ident)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "QueueJob":
        return cls.model_validate_json(data)

    @property
    def attempts_left(self) -> int:
        return max(0, self.opts.attempts - self.attempts_made)

    def lock_for(self, worker_id: str, lock_duration_ms: int) -> None:
        now = _utcnow()
        self.state = JobState.ACTIVE
        self.worker_id = worker_id
        self.lock_token = uuid.uuid4().hex
        self.lock_expires_at = now + timedelta(milliseconds=lock_duration_ms)
        self.processed_on = now

    def release_lock(self) -> None:
        self.worker_id = None
        self.lock_token = None
        self.lock_expires_at = None

    def record_failure(self, error: str, stack: Optional[str], retryable: bool) -> bool:
        """Apply a failed attempt; return ``True`` when the job is finally failed."""
        self.attempts_made += 1
        self.failed_reason = error
        if stack:
            self.stacktrace.append(stack)
        self.release_lock()
        if retryable and self.attempts_made < self.opts.attempts:
            self.state = JobState.DELAYED
            delay = self.opts.backoff.delay_for(self.attempts_made)
            self.available_at = _utcnow() + timedelta(milliseconds=delay)
            return False
        self.state = JobState.FAILED
        self.finished_on = _utcnow()
        return True

    def record_completion(self, return_value: Any) -> None:
        self.release_lock()
        self.state = JobState.COMPLETED
        self.return_value = return_value
        self.finished_on = _utcnow()


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.delayed + self.completed + self.failed


class StalledJob(BaseModel):
    job: QueueJob
    final: bool
