from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Connection settings for the Redis queue backend."""

    url: Optional[str] = None
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "nexusflow"


class BackoffConfig(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = 2000


class RetentionConfig(BaseModel):
    count: Optional[int] = None
    age_seconds: Optional[int] = None


class JobDefaultsConfig(BaseModel):
    """Options applied to every job unless the enqueuing call overrides them."""

    attempts: int = 3
    backoff: BackoffConfig = BackoffConfig()
    remove_on_complete: RetentionConfig = RetentionConfig(count=100, age_seconds=24 * 3600)
    remove_on_fail: RetentionConfig = RetentionConfig(count=1000)


class QueueConfig(BaseModel):
    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    default_job_options: JobDefaultsConfig = JobDefaultsConfig()


class WorkerConfig(BaseModel):
    concurrency: int = 5
    workflow_concurrency: int = 3
    lock_duration_ms: int = 30000
    max_stalled_count: int = 2
    poll_interval: float = 0.1


class WorkflowConfig(BaseModel):
    timeout_ms: int = 300000
    sped_timeout_ms: int = 600000
    embedding_timeout_ms: int = 300000


class StreamConfig(BaseModel):
    poll_interval: float = 1.0
    close_grace: float = 1.0


class NexusflowConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = QueueConfig()
    worker: WorkerConfig = WorkerConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    stream: StreamConfig = StreamConfig()
    database_url: Optional[str] = None
    log_level: str = Field(default="INFO")


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def load_config(path: Optional[str] = None) -> NexusflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NEXUSFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("NEXUSFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NexusflowConfig(**data)
    else:
        config = NexusflowConfig()

    env_db_url = os.getenv("NEXUSFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    redis_url = os.getenv("REDIS_URL") or os.getenv("REDIS_TLS_URL")
    if redis_url:
        config.queue.redis.url = redis_url
        config.queue.backend = "redis"

    backend = os.getenv("NEXUSFLOW_QUEUE_BACKEND")
    if backend:
        config.queue.backend = backend.lower()  # type: ignore[assignment]

    concurrency = _env_int("WORKER_CONCURRENCY")
    if concurrency is not None:
        config.worker.concurrency = concurrency
    workflow_concurrency = _env_int("WORKFLOW_WORKER_CONCURRENCY")
    if workflow_concurrency is not None:
        config.worker.workflow_concurrency = workflow_concurrency
    timeout_ms = _env_int("WORKFLOW_TIMEOUT_MS")
    if timeout_ms is not None:
        config.workflow.timeout_ms = timeout_ms
    return config
