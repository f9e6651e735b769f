import pytest

from nexusflow.errors import EnqueueError, NotFoundError
from nexusflow.queue.manager import (
    EmbeddingChunk,
    EmbeddingJobData,
    QueueManager,
    SpedJobData,
    WorkflowJobData,
)


def _workflow_job(execution_id="exec-1", organization_id="org-x") -> WorkflowJobData:
    return WorkflowJobData(
        execution_id=execution_id,
        workflow_template_id="tmpl-1",
        workflow_name="Summarize",
        user_id="user-a",
        organization_id=organization_id,
        input={"text": "abc"},
    )


@pytest.mark.asyncio
async def test_enqueue_workflow_sets_priority_and_timeout(backend, config):
    manager = QueueManager(backend=backend, config=config)

    org = await manager.enqueue_workflow(_workflow_job("exec-org"))
    personal = await manager.enqueue_workflow(_workflow_job("exec-me", organization_id=None))

    assert org.job_id == "exec-org"
    assert org.execution_id == "exec-org"
    org_job = await backend.get_job("workflows", org.job_id)
    personal_job = await backend.get_job("workflows", personal.job_id)
    assert org_job.name == "execute-workflow"
    assert org_job.opts.priority == 1
    assert personal_job.opts.priority == 2
    assert org_job.opts.timeout_ms == 300000
    assert org_job.opts.attempts == 3
    assert org_job.opts.backoff.delay_ms == 2000
    assert org_job.data["input"] == {"text": "abc"}


@pytest.mark.asyncio
async def test_enqueue_side_families(backend, config):
    manager = QueueManager(backend=backend, config=config)
    sped = await manager.enqueue_sped(
        SpedJobData(sped_file_id="f1", file_path="/tmp/f1.txt", organization_id="org-x", user_id="u")
    )
    emb = await manager.enqueue_embedding(
        EmbeddingJobData(document_id="d1", chunks=[EmbeddingChunk(id="c1", content="hello")])
    )
    assert sped.sped_file_id == "f1"
    assert (await backend.get_job("sped", sped.job_id)).opts.timeout_ms == 600000
    assert emb.document_id == "d1"
    assert (await backend.get_job("embeddings", emb.job_id)).name == "generate-embeddings"


@pytest.mark.asyncio
async def test_enqueue_failure_raises_enqueue_error(backend, config):
    manager = QueueManager(backend=backend, config=config)
    await backend.close()
    with pytest.raises(EnqueueError, match="Failed to enqueue execute-workflow"):
        await manager.enqueue_workflow(_workflow_job())


@pytest.mark.asyncio
async def test_job_status_cancel_and_stats(backend, config):
    manager = QueueManager(backend=backend, config=config)
    first = await manager.enqueue_workflow(_workflow_job("exec-1"))
    second = await manager.enqueue_workflow(_workflow_job("exec-2"))

    status = await manager.get_job_status("workflows", first.job_id)
    assert status.state == "waiting"
    assert status.data["execution_id"] == "exec-1"
    assert await manager.get_job_status("workflows", "missing") is None

    claimed = await backend.claim("workflows", "w", 30000)
    assert claimed.id == first.job_id
    assert await manager.cancel_job("workflows", first.job_id) is False
    assert await manager.cancel_job("workflows", second.job_id) is True
    with pytest.raises(NotFoundError):
        await manager.cancel_job("workflows", second.job_id)

    stats = await manager.get_queue_stats("workflows")
    assert stats.active == 1
    assert stats.waiting == 0
    assert stats.total == 1
