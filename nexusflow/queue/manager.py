"""Queue manager: the single write path from the request side into the workers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..config import NexusflowConfig, load_config
from ..constants import (
    JOB_EXECUTE_WORKFLOW,
    JOB_GENERATE_EMBEDDINGS,
    JOB_PROCESS_SPED,
    PRIORITY_ORGANIZATION,
    PRIORITY_PERSONAL,
    QUEUE_EMBEDDINGS,
    QUEUE_SPED,
    QUEUE_WORKFLOWS,
)
from ..errors import EnqueueError, NotFoundError
from . import get_queue_backend
from .base import BaseQueueBackend
from .models import JobOptions

logger = logging.getLogger(__name__)


class WorkflowJobData(BaseModel):
    """Payload carried by a workflow execution job."""

    execution_id: str
    workflow_template_id: str
    workflow_name: str
    user_id: str
    organization_id: Optional[str] = None
    input: Dict[str, Any] = Field(default_factory=dict)


class SpedJobData(BaseModel):
    sped_file_id: str
    file_path: str
    organization_id: str
    user_id: str


class EmbeddingChunk(BaseModel):
    id: str
    content: str


class EmbeddingJobData(BaseModel):
    document_id: str
    chunks: List[EmbeddingChunk] = Field(default_factory=list)
    organization_id: Optional[str] = None


class EnqueueResult(BaseModel):
    job_id: str
    execution_id: Optional[str] = None
    sped_file_id: Optional[str] = None
    document_id: Optional[str] = None


class JobStatus(BaseModel):
    id: str
    name: str
    data: Dict[str, Any]
    progress: Any = None
    state: str
    return_value: Any = None
    failed_reason: Optional[str] = None
    attempts_made: int = 0
    timestamp: Any = None
    processed_on: Any = None
    finished_on: Any = None


class QueueStats(BaseModel):
    waiting: int
    active: int
    delayed: int
    completed: int
    failed: int
    total: int


class QueueManager:
    """Unified interface for enqueuing and inspecting jobs."""

    def __init__(
        self,
        backend: Optional[BaseQueueBackend] = None,
        config: Optional[NexusflowConfig] = None,
    ) -> None:
        self.config = config or load_config()
        self.backend = backend or get_queue_backend(config=self.config)

    def _options(self, **overrides: Any) -> JobOptions:
        return JobOptions.from_defaults(self.config.queue.default_job_options, **overrides)

    async def _add(self, queue_name: str, job_name: str, data: dict, opts: JobOptions) -> str:
        try:
            job = await self.backend.enqueue(queue_name, job_name, data, opts)
        except Exception as e:
            logger.error(f"Failed to enqueue {job_name} on {queue_name}: {e}")
            raise EnqueueError(f"Failed to enqueue {job_name}: {e}") from e
        return job.id

    async def enqueue_workflow(self, data: WorkflowJobData) -> EnqueueResult:
        """Add a workflow execution job keyed by its execution id.

        Organization runs get the higher priority. Enqueuing the same
        execution twice returns the existing job.
        """
        opts = self._options(
            job_id=data.execution_id,
            priority=PRIORITY_ORGANIZATION if data.organization_id else PRIORITY_PERSONAL,
            timeout_ms=self.config.workflow.timeout_ms,
        )
        job_id = await self._add(QUEUE_WORKFLOWS, JOB_EXECUTE_WORKFLOW, data.model_dump(), opts)
        logger.info(f"Workflow enqueued: job_id={job_id} execution_id={data.execution_id}")
        return EnqueueResult(job_id=job_id, execution_id=data.execution_id)

    async def enqueue_sped(self, data: SpedJobData) -> EnqueueResult:
        opts = self._options(timeout_ms=self.config.workflow.sped_timeout_ms)
        job_id = await self._add(QUEUE_SPED, JOB_PROCESS_SPED, data.model_dump(), opts)
        logger.info(f"SPED import enqueued: job_id={job_id} sped_file_id={data.sped_file_id}")
        return EnqueueResult(job_id=job_id, sped_file_id=data.sped_file_id)

    async def enqueue_embedding(self, data: EmbeddingJobData) -> EnqueueResult:
        opts = self._options(timeout_ms=self.config.workflow.embedding_timeout_ms)
        job_id = await self._add(QUEUE_EMBEDDINGS, JOB_GENERATE_EMBEDDINGS, data.model_dump(), opts)
        logger.info(f"Embedding job enqueued: job_id={job_id} document_id={data.document_id}")
        return EnqueueResult(job_id=job_id, document_id=data.document_id)

    async def get_job_status(self, queue_name: str, job_id: str) -> Optional[JobStatus]:
        job = await self.backend.get_job(queue_name, job_id)
        if job is None:
            return None
        return JobStatus(
            id=job.id,
            name=job.name,
            data=job.data,
            progress=job.progress,
            state=job.state.value,
            return_value=job.return_value,
            failed_reason=job.failed_reason,
            attempts_made=job.attempts_made,
            timestamp=job.timestamp,
            processed_on=job.processed_on,
            finished_on=job.finished_on,
        )

    async def cancel_job(self, queue_name: str, job_id: str) -> bool:
        """Remove a queued job; returns ``False`` when a worker already holds it."""
        job = await self.backend.get_job(queue_name, job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        removed = await self.backend.remove_job(queue_name, job_id)
        if removed:
            logger.info(f"Job cancelled: {job_id}")
        else:
            logger.info(f"Job {job_id} is active; relying on cooperative cancellation")
        return removed

    async def get_queue_stats(self, queue_name: str) -> QueueStats:
        counts = await self.backend.counts(queue_name)
        return QueueStats(**counts.model_dump(), total=counts.total)
