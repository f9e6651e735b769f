"""Queue backend factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import NexusflowConfig, load_config
from .base import BaseQueueBackend
from .inmemory import InMemoryQueueBackend
from .models import BackoffPolicy, JobOptions, JobState, QueueCounts, QueueJob, RetentionPolicy


def get_queue_backend(
    backend: Optional[str] = None, config: Optional[NexusflowConfig] = None
) -> BaseQueueBackend:
    """Factory function to get the configured queue backend."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("NEXUSFLOW_QUEUE_BACKEND")
        or config.queue.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryQueueBackend()
    elif backend == "redis":
        from .redis import RedisQueueBackend

        redis_conf = config.queue.redis
        return RedisQueueBackend(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            url=redis_conf.url,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = [
    "BackoffPolicy",
    "BaseQueueBackend",
    "InMemoryQueueBackend",
    "JobOptions",
    "JobState",
    "QueueCounts",
    "QueueJob",
    "RetentionPolicy",
    "get_queue_backend",
]
