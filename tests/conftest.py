"""Shared fixtures: in-memory store and queue, a scripted LLM and sample graphs."""

from typing import Optional

import pytest

import nexusflow.persistence as persistence
from nexusflow.access import Caller, Role
from nexusflow.config import NexusflowConfig, StreamConfig
from nexusflow.engine import WorkflowEngine
from nexusflow.llm import LlmResult
from nexusflow.persistence import InMemoryExecutionStore
from nexusflow.queue import InMemoryQueueBackend
from nexusflow.queue.manager import QueueManager
from nexusflow.service import WorkflowService
from nexusflow.tools import default_registry
from nexusflow.worker import Worker
from nexusflow.workers.workflow import WorkflowJobProcessor

ENV_VARS = (
    "NEXUSFLOW_CONFIG",
    "NEXUSFLOW_DATABASE_URL",
    "DATABASE_URL",
    "REDIS_URL",
    "REDIS_TLS_URL",
    "NEXUSFLOW_QUEUE_BACKEND",
    "WORKER_CONCURRENCY",
    "WORKFLOW_WORKER_CONCURRENCY",
    "WORKFLOW_TIMEOUT_MS",
)


class ScriptedLlm:
    """Stands in for a model: answers every prompt with a fixed summary."""

    def __init__(self, reply: str = "a short summary"):
        self.reply = reply
        self.prompts = []

    async def invoke(self, model: str, prompt: str, system_prompt: Optional[str] = None):
        self.prompts.append(prompt)
        return LlmResult(text=self.reply, input_tokens=12, output_tokens=8)


def always_fails(arguments):
    raise RuntimeError("validation service unavailable")


def summary_graph(validate_tool: str = "data_validation") -> dict:
    """``input -> tool:validate -> llm:summarize -> output``."""
    return {
        "nodes": [
            {"type": "input", "id": "input"},
            {
                "type": "tool",
                "id": "validate",
                "name": "tool:validate",
                "tool": validate_tool,
                "arguments": {"required": ["text"]},
            },
            {
                "type": "llm",
                "id": "summarize",
                "name": "llm:summarize",
                "model": "openai:gpt-4o-mini",
                "prompt": "Summarize: {text}",
                "output_key": "summary",
            },
            {"type": "output", "id": "output", "fields": {"summary": "summary"}},
        ],
        "edges": [
            {"source": "input", "target": "validate"},
            {"source": "validate", "target": "summarize"},
            {"source": "summarize", "target": "output"},
        ],
    }


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence.reset_store()
    yield
    persistence.reset_store()


@pytest.fixture
def config():
    return NexusflowConfig(stream=StreamConfig(poll_interval=0.01, close_grace=0))


@pytest.fixture
def store():
    return InMemoryExecutionStore()


@pytest.fixture
def backend():
    return InMemoryQueueBackend()


@pytest.fixture
def llm():
    return ScriptedLlm()


@pytest.fixture
def tools():
    registry = default_registry()
    registry.register("always_fails", always_fails)
    return registry


@pytest.fixture
def engine(store, tools, llm):
    return WorkflowEngine(store, tools=tools, llm=llm)


@pytest.fixture
def service(store, backend, config, tools):
    return WorkflowService(
        store=store,
        queue=QueueManager(backend=backend, config=config),
        config=config,
        tools=tools,
    )


@pytest.fixture
def worker(store, backend, engine):
    processor = WorkflowJobProcessor(store, engine)
    return Worker(
        "workflows",
        processor,
        backend,
        lock_duration_ms=1000,
        poll_interval=0.01,
        on_failed=processor.handle_failed,
    )


@pytest.fixture
def admin():
    return Caller(id="admin-x", organization_id="org-x", role=Role.ADMIN)


@pytest.fixture
def member_x():
    return Caller(id="user-a", organization_id="org-x", role=Role.MEMBER)


@pytest.fixture
def member_y():
    return Caller(id="user-b", organization_id="org-y", role=Role.MEMBER)


@pytest.fixture
def super_admin():
    return Caller(id="root", organization_id=None, role=Role.SUPER_ADMIN)


@pytest.fixture
def graph_data():
    return summary_graph()


@pytest.fixture
def failing_graph_data():
    return summary_graph("always_fails")
