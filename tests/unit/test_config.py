"""Tests for configuration loading."""

from nexusflow.config import load_config
from nexusflow.queue import get_queue_backend
from nexusflow.queue.inmemory import InMemoryQueueBackend
from nexusflow.queue.redis import RedisQueueBackend


def test_defaults_without_config_file():
    config = load_config()
    assert config.queue.backend == "inmemory"
    assert config.queue.default_job_options.attempts == 3
    assert config.queue.default_job_options.backoff.delay_ms == 2000
    assert config.queue.default_job_options.remove_on_complete.count == 100
    assert config.queue.default_job_options.remove_on_fail.count == 1000
    assert config.worker.concurrency == 5
    assert config.worker.workflow_concurrency == 3
    assert config.workflow.timeout_ms == 300000
    assert config.database_url is None


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "nexus.yaml"
    config_path.write_text(
        """
queue:
  backend: redis
  redis:
    host: testhost
    port: 1234
worker:
  lock_duration_ms: 5000
stream:
  poll_interval: 0.5
"""
    )
    monkeypatch.setenv("NEXUSFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.queue.backend == "redis"
    assert config.queue.redis.host == "testhost"
    assert config.queue.redis.port == 1234
    assert config.worker.lock_duration_ms == 5000
    assert config.stream.poll_interval == 0.5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite://./exec.db")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("WORKFLOW_WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("WORKFLOW_TIMEOUT_MS", "1000")

    config = load_config()
    assert config.database_url == "sqlite://./exec.db"
    assert config.queue.backend == "redis"
    assert config.queue.redis.url == "redis://cache:6379/2"
    assert config.worker.concurrency == 8
    assert config.worker.workflow_concurrency == 4
    assert config.workflow.timeout_ms == 1000


def test_get_queue_backend_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
queue:
  backend: redis
  redis:
    host: confighost
    port: 6380
    prefix: tenant
"""
    )
    monkeypatch.setenv("NEXUSFLOW_CONFIG", str(config_path))

    backend = get_queue_backend()
    assert isinstance(backend, RedisQueueBackend)
    assert backend.host == "confighost"
    assert backend.port == 6380
    assert backend.key("workflows", "waiting") == "tenant:workflows:waiting"


def test_backend_env_var_wins_over_config(monkeypatch):
    monkeypatch.setenv("NEXUSFLOW_QUEUE_BACKEND", "inmemory")
    assert isinstance(get_queue_backend(), InMemoryQueueBackend)
