import asyncio
import os
import signal

import pytest

from nexusflow.cli import run_workers
from nexusflow.config import NexusflowConfig, WorkerConfig
from nexusflow.persistence import ExecutionStatus
from nexusflow.queue.manager import SpedJobData
from nexusflow.workers import (
    WorkerPool,
    register_processor,
    registered_queues,
    start_all_workers,
    stop_all_workers,
    unregister_processor,
)


@pytest.fixture
def pool(store, backend, engine):
    config = NexusflowConfig(worker=WorkerConfig(poll_interval=0.01))
    return WorkerPool(store=store, backend=backend, config=config, engine=engine)


@pytest.fixture
def sped_jobs():
    seen = []

    async def process_sped(job):
        seen.append(job.data["sped_file_id"])
        return {"imported": True}

    register_processor("sped", process_sped)
    yield seen
    unregister_processor("sped")


def test_build_worker_concurrency_per_family(pool, sped_jobs):
    assert pool.build_worker("workflows").concurrency == 3
    assert pool.build_worker("sped").concurrency == 2
    assert pool.build_worker("workflows", concurrency=7).concurrency == 7
    with pytest.raises(ValueError, match="No processor registered"):
        pool.build_worker("embeddings")


def test_registered_queues(sped_jobs):
    assert registered_queues() == ["sped"]


@pytest.mark.asyncio
async def test_pool_runs_workflow_and_registered_queues(
    pool, sped_jobs, service, store, admin, member_x, graph_data
):
    template = await service.create_template(admin, "Summarize", graph_data)
    submitted = await service.execute_workflow(member_x, template.id, {"text": "abc"})
    await service.queue.enqueue_sped(
        SpedJobData(sped_file_id="f1", file_path="/tmp/f1.txt", organization_id="org-x", user_id="u")
    )

    workers = await start_all_workers(pool)
    assert sorted(workers) == ["sped", "workflows"]
    assert workers is pool.workers

    async def settled():
        while True:
            execution = await store.get_execution_by_id(submitted.execution.id)
            if execution.is_terminal and sped_jobs:
                return execution
            await asyncio.sleep(0.01)

    try:
        execution = await asyncio.wait_for(settled(), 2.0)
    finally:
        await stop_all_workers(pool)

    assert execution.status == ExecutionStatus.COMPLETED
    assert sped_jobs == ["f1"]
    assert pool.workers == {}


@pytest.mark.asyncio
async def test_pool_start_respects_lifespan(pool):
    await pool.start(["workflows"], lifespan=0.05)
    await asyncio.wait_for(pool.wait(), 1.0)
    assert not pool.workers["workflows"].running
    await pool.stop()


@pytest.mark.asyncio
async def test_sigterm_drains_running_jobs(pool, sped_jobs, service, backend):
    release = asyncio.Event()
    finished = []

    async def slow_sped(job):
        loop.call_soon(os.kill, os.getpid(), signal.SIGTERM)
        await release.wait()
        finished.append(job.id)

    loop = asyncio.get_running_loop()
    register_processor("sped", slow_sped)
    await service.queue.enqueue_sped(
        SpedJobData(sped_file_id="f1", file_path="/tmp/f1.txt", organization_id="org-x", user_id="u")
    )

    runner = asyncio.create_task(run_workers(pool, ["sped"]))
    async def draining():
        while not pool.workers or pool.workers["sped"].running:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(draining(), 2.0)
    assert not runner.done()

    release.set()
    await asyncio.wait_for(runner, 2.0)

    assert len(finished) == 1
    assert pool.workers == {}
    await backend.connect()
    assert (await backend.counts("sped")).completed == 1
