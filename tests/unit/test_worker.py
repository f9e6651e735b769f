import asyncio
import uuid

import pytest

from nexusflow.engine import WorkflowEngine
from nexusflow.persistence import ExecutionStatus, InMemoryExecutionStore
from nexusflow.queue import BackoffPolicy, JobOptions, JobState
from nexusflow.queue.manager import QueueManager, WorkflowJobData
from nexusflow.service import WorkflowService
from nexusflow.worker import Worker
from nexusflow.workers.workflow import WorkflowJobProcessor, process_workflow_job


async def _submit(service, admin, caller, graph):
    template = await service.create_template(admin, "Summarize", graph)
    return await service.execute_workflow(caller, template.id, {"text": "abc"})


async def _enqueue_raw(store, backend, template_id=None, opts=None):
    template_id = template_id or str(uuid.uuid4())
    execution = await store.create_execution(template_id, "org-x", "user-a", {"text": "abc"})
    data = WorkflowJobData(
        execution_id=execution.id,
        workflow_template_id=template_id,
        workflow_name="Summarize",
        user_id="user-a",
        organization_id="org-x",
        input=execution.input,
    )
    job = await backend.enqueue(
        "workflows", "execute-workflow", data.model_dump(), opts or JobOptions(job_id=execution.id)
    )
    return execution, job


@pytest.mark.asyncio
async def test_run_next_returns_none_when_idle(worker):
    assert await worker.run_next() is None


@pytest.mark.asyncio
async def test_worker_completes_execution(service, worker, store, backend, admin, member_x, graph_data):
    submitted = await _submit(service, admin, member_x, graph_data)

    job = await worker.run_next()

    assert job.id == submitted.execution.id
    execution = await store.get_execution_by_id(submitted.execution.id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.output == {"summary": "a short summary"}
    assert execution.progress == 100
    assert execution.current_step == execution.total_steps == 4
    assert execution.started_at is not None
    assert execution.completed_at is not None

    settled = await backend.get_job("workflows", job.id)
    assert settled.state == JobState.COMPLETED
    assert settled.return_value["status"] == "completed"
    assert settled.return_value["tokens_used"] == 20


@pytest.mark.asyncio
async def test_step_failure_fails_execution_without_retry(
    service, worker, store, backend, admin, member_x, failing_graph_data
):
    submitted = await _submit(service, admin, member_x, failing_graph_data)

    job = await worker.run_next()

    execution = await store.get_execution_by_id(submitted.execution.id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "validation service unavailable"
    assert "EngineStepError" in execution.error_stack
    assert (await backend.get_job("workflows", job.id)).state == JobState.COMPLETED
    assert await worker.run_next() is None


@pytest.mark.asyncio
async def test_terminal_execution_is_left_alone(
    service, worker, store, backend, admin, member_x, graph_data, llm
):
    submitted = await _submit(service, admin, member_x, graph_data)
    await store.update_execution_status(
        submitted.execution.id, ExecutionStatus.COMPLETED, output={"done": True}
    )

    job = await worker.run_next()

    assert llm.prompts == []
    assert await store.list_execution_steps(submitted.execution.id) == []
    execution = await store.get_execution_by_id(submitted.execution.id)
    assert execution.output == {"done": True}
    assert (await backend.get_job("workflows", job.id)).return_value == {
        "execution_id": submitted.execution.id,
        "status": "completed",
    }


@pytest.mark.asyncio
async def test_missing_template_fails_job_permanently(worker, store, backend):
    execution, _ = await _enqueue_raw(store, backend)

    job = await worker.run_next()

    settled = await backend.get_job("workflows", job.id)
    assert settled.state == JobState.FAILED
    assert settled.attempts_made == 1
    stored = await store.get_execution_by_id(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error.startswith("Workflow template not found")


@pytest.mark.asyncio
async def test_infrastructure_error_retries_then_marks_execution_failed(store, backend, engine):
    handler = WorkflowJobProcessor(store, engine)
    calls = []

    async def broken(job):
        calls.append(job.attempts_made)
        raise RuntimeError("database unavailable")

    worker = Worker("workflows", broken, backend, lock_duration_ms=1000, on_failed=handler.handle_failed)
    opts = JobOptions(attempts=2, backoff=BackoffPolicy(type="fixed", delay_ms=10))
    execution, _ = await _enqueue_raw(store, backend, opts=opts)

    await worker.run_next()
    assert (await store.get_execution_by_id(execution.id)).status == ExecutionStatus.PENDING

    await asyncio.sleep(0.03)
    job = await worker.run_next()

    assert calls == [0, 1]
    assert (await backend.get_job("workflows", job.id)).state == JobState.FAILED
    stored = await store.get_execution_by_id(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error == "database unavailable"
    assert "RuntimeError" in stored.error_stack


@pytest.mark.asyncio
async def test_job_timeout_counts_as_failure(backend):
    failures = []

    async def slow(job):
        await asyncio.sleep(1)

    worker = Worker(
        "q",
        slow,
        backend,
        on_failed=lambda job, error, final: failures.append((error, final)),
    )
    await backend.enqueue("q", "slow", {}, JobOptions(timeout_ms=20, attempts=1))

    await worker.run_next()

    assert failures == [("Job timed out after 20 ms", True)]


@pytest.mark.asyncio
async def test_hooks_receive_outcomes(backend):
    completed = []

    async def on_completed(job, result):
        completed.append(result)

    def explode(job, error, final):
        raise RuntimeError("hook failure is logged, not raised")

    worker = Worker(
        "q",
        lambda job: asyncio.sleep(0, result={"n": job.data["n"]}),
        backend,
        on_completed=on_completed,
        on_failed=explode,
    )
    await backend.enqueue("q", "job", {"n": 7})
    await worker.run_next()
    assert completed == [{"n": 7}]

    worker._processor = lambda job: asyncio.sleep(0, result=job.data["missing"])
    await backend.enqueue("q", "job", {"n": 8}, JobOptions(attempts=1))
    await worker.run_next()
    assert (await backend.counts("q")).failed == 1


@pytest.mark.asyncio
async def test_final_stall_marks_execution_failed(store, backend, engine):
    handler = WorkflowJobProcessor(store, engine)
    worker = Worker(
        "workflows",
        handler,
        backend,
        lock_duration_ms=10,
        max_stalled_count=0,
        on_failed=handler.handle_failed,
    )
    execution, _ = await _enqueue_raw(store, backend)
    await backend.claim("workflows", "crashed-worker", 10)
    await asyncio.sleep(0.03)

    await worker.check_stalled()

    stored = await store.get_execution_by_id(execution.id)
    assert stored.status == ExecutionStatus.FAILED
    assert stored.error == "job stalled more than allowable limit"


@pytest.mark.asyncio
async def test_start_processes_jobs_concurrently_until_lifespan(backend):
    running = 0
    peak = 0

    async def track(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1

    worker = Worker("q", track, backend, concurrency=2, poll_interval=0.01)
    for i in range(4):
        await backend.enqueue("q", "job", {"i": i})

    await worker.start(lifespan=0.5)

    assert peak == 2
    assert (await backend.counts("q")).completed == 4
    assert not worker.running


@pytest.mark.asyncio
async def test_process_workflow_job_function(service, store, backend, engine, admin, member_x, graph_data):
    submitted = await _submit(service, admin, member_x, graph_data)
    job = await backend.claim("workflows", "w", 30000)

    result = await process_workflow_job(job, store, engine)

    assert result["execution_id"] == submitted.execution.id
    assert result["status"] == "completed"


class CancelOnTemplateLoad(InMemoryExecutionStore):
    """Runs ``on_load`` right after the template is read, like a concurrent cancel."""

    on_load = None

    async def get_template(self, template_id):
        template = await super().get_template(template_id)
        if self.on_load is not None:
            await self.on_load()
        return template


@pytest.mark.asyncio
async def test_cancel_during_template_load_is_not_overwritten(
    backend, config, tools, llm, admin, member_x, graph_data
):
    store = CancelOnTemplateLoad()
    service = WorkflowService(
        store=store, queue=QueueManager(backend=backend, config=config), config=config, tools=tools
    )
    submitted = await _submit(service, admin, member_x, graph_data)
    execution_id = submitted.execution.id

    async def cancel():
        store.on_load = None
        await service.cancel_execution(member_x, execution_id)

    store.on_load = cancel
    processor = WorkflowJobProcessor(store, WorkflowEngine(store, tools=tools, llm=llm))
    job = await Worker("workflows", processor, backend).run_next()

    execution = await store.get_execution_by_id(execution_id)
    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.started_at is None
    assert llm.prompts == []
    assert await store.list_execution_steps(execution_id) == []
    assert (await backend.get_job("workflows", job.id)).return_value == {
        "execution_id": execution_id,
        "status": "cancelled",
    }
