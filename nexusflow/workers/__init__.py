"""Worker pool: one ``Worker`` per queue family."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from ..config import NexusflowConfig, load_config
from ..constants import QUEUE_EMBEDDINGS, QUEUE_SPED, QUEUE_WORKFLOWS
from ..engine import WorkflowEngine
from ..persistence import get_store
from ..persistence.repository import ExecutionStore
from ..queue import get_queue_backend
from ..queue.base import BaseQueueBackend
from ..worker import FailedHook, Processor, Worker
from .workflow import WorkflowJobProcessor, process_workflow_job

logger = logging.getLogger(__name__)

_processors: Dict[str, Processor] = {}
_failed_hooks: Dict[str, FailedHook] = {}


def register_processor(
    queue_name: str, processor: Processor, on_failed: Optional[FailedHook] = None
) -> None:
    """Register the processor for an externally implemented queue family."""
    _processors[queue_name] = processor
    if on_failed is not None:
        _failed_hooks[queue_name] = on_failed
    logger.info(f"Processor registered for queue {queue_name}")


def unregister_processor(queue_name: str) -> None:
    _processors.pop(queue_name, None)
    _failed_hooks.pop(queue_name, None)


def registered_queues() -> List[str]:
    return sorted(_processors)


class WorkerPool:
    """Starts and stops the workers of one process."""

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        backend: Optional[BaseQueueBackend] = None,
        config: Optional[NexusflowConfig] = None,
        engine: Optional[WorkflowEngine] = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store or get_store(config=self.config)
        self.backend = backend or get_queue_backend(config=self.config)
        self.engine = engine or WorkflowEngine(self.store)
        self.workers: Dict[str, Worker] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _concurrency(self, queue_name: str, override: Optional[int]) -> int:
        if override is not None:
            return override
        if queue_name == QUEUE_WORKFLOWS:
            return self.config.worker.workflow_concurrency
        if queue_name == QUEUE_SPED:
            return 2
        if queue_name == QUEUE_EMBEDDINGS:
            return 3
        return self.config.worker.concurrency

    def build_worker(self, queue_name: str, concurrency: Optional[int] = None) -> Worker:
        worker_conf = self.config.worker
        if queue_name == QUEUE_WORKFLOWS:
            processor = WorkflowJobProcessor(self.store, self.engine)
            processor_fn: Processor = processor
            on_failed: Optional[FailedHook] = processor.handle_failed
        elif queue_name in _processors:
            processor_fn = _processors[queue_name]
            on_failed = _failed_hooks.get(queue_name)
        else:
            raise ValueError(f"No processor registered for queue: {queue_name}")
        return Worker(
            queue_name,
            processor_fn,
            self.backend,
            concurrency=self._concurrency(queue_name, concurrency),
            lock_duration_ms=worker_conf.lock_duration_ms,
            max_stalled_count=worker_conf.max_stalled_count,
            poll_interval=worker_conf.poll_interval,
            on_failed=on_failed,
        )

    async def start(
        self,
        queues: Optional[List[str]] = None,
        concurrency: Optional[int] = None,
        lifespan: Optional[float] = None,
    ) -> Dict[str, Worker]:
        """Start a worker per queue; defaults to workflows plus registered families."""
        await self.backend.connect()
        for queue_name in queues or [QUEUE_WORKFLOWS, *registered_queues()]:
            if queue_name in self.workers:
                continue
            worker = self.build_worker(queue_name, concurrency)
            self.workers[queue_name] = worker
            self._tasks[queue_name] = asyncio.create_task(worker.start(lifespan=lifespan))
        logger.info(f"Started workers: {', '.join(self.workers)}")
        return self.workers

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks.values())

    async def stop(self) -> None:
        logger.info("Stopping all workers...")
        await asyncio.gather(*(worker.close() for worker in self.workers.values()))
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self.workers.clear()
        self._tasks.clear()
        await self.backend.close()
        logger.info("All workers stopped")


async def start_all_workers(
    pool: WorkerPool, queues: Optional[List[str]] = None
) -> Dict[str, Worker]:
    """Start the pool's workers and return them keyed by queue name."""
    return await pool.start(queues)


async def stop_all_workers(pool: WorkerPool) -> None:
    await pool.stop()


__all__ = [
    "WorkerPool",
    "WorkflowJobProcessor",
    "process_workflow_job",
    "register_processor",
    "registered_queues",
    "start_all_workers",
    "stop_all_workers",
    "unregister_processor",
]
