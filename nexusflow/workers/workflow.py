"""Processor for jobs on the workflows queue."""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict

from ..engine import WorkflowEngine
from ..errors import EngineStepError, ExecutionCancelled, NotFoundError
from ..persistence.models import Execution, ExecutionStatus, can_transition, utcnow
from ..persistence.repository import ExecutionStore
from ..queue.manager import WorkflowJobData
from ..queue.models import QueueJob

logger = logging.getLogger(__name__)


class WorkflowJobProcessor:
    """Drive one execution through the engine and persist its outcome.

    Only this processor moves an execution out of ``running``. A step failure
    settles the execution as ``failed`` and completes the job, because the
    graph would fail the same way on retry. Infrastructure errors propagate so
    the queue retries the job; ``handle_failed`` records the final failure.
    """

    def __init__(self, store: ExecutionStore, engine: WorkflowEngine) -> None:
        self.store = store
        self.engine = engine

    async def __call__(self, job: QueueJob) -> Dict[str, Any]:
        data = WorkflowJobData.model_validate(job.data)
        execution = await self.store.get_execution_by_id(data.execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {data.execution_id}")

        if execution.is_terminal:
            logger.info(
                f"Execution {execution.id} already {execution.status.value}; "
                f"skipping job {job.id}"
            )
            return {"execution_id": execution.id, "status": execution.status.value}

        template = await self.store.get_template(data.workflow_template_id)
        if template is None:
            current = await self._settled_or_current(execution.id, ExecutionStatus.FAILED, job)
            if not current.is_terminal:
                await self.store.update_execution_status(
                    execution.id,
                    ExecutionStatus.FAILED,
                    error=f"Workflow template not found: {data.workflow_template_id}",
                    completed_at=utcnow(),
                )
            raise NotFoundError(f"Workflow template not found: {data.workflow_template_id}")

        # a cancel may have landed while the template was loading
        current = await self._settled_or_current(execution.id, ExecutionStatus.RUNNING, job)
        if current.is_terminal:
            return {"execution_id": current.id, "status": current.status.value}
        if current.status == ExecutionStatus.PENDING:
            execution = await self.store.update_execution_status(
                execution.id, ExecutionStatus.RUNNING, started_at=utcnow()
            )
        else:
            execution = current
        logger.info(f"Running execution {execution.id} of workflow {data.workflow_name}")

        try:
            result = await self.engine.execute(template, execution)
        except ExecutionCancelled as e:
            logger.info(f"{e.message}; stopping")
            current = await self.store.get_execution_by_id(execution.id)
            status = current.status if current else ExecutionStatus.CANCELLED
            return {"execution_id": execution.id, "status": status.value}
        except EngineStepError as e:
            current = await self._settled_or_current(execution.id, ExecutionStatus.FAILED, job)
            if current.is_terminal:
                return {"execution_id": current.id, "status": current.status.value}
            await self.store.update_execution_status(
                execution.id,
                ExecutionStatus.FAILED,
                error=e.message,
                error_stack=traceback.format_exc(),
                completed_at=utcnow(),
            )
            logger.error(f"Execution {execution.id} failed at step {e.step_name}: {e.message}")
            return {
                "execution_id": execution.id,
                "status": ExecutionStatus.FAILED.value,
                "error": e.message,
            }

        current = await self._settled_or_current(execution.id, ExecutionStatus.COMPLETED, job)
        if current.is_terminal:
            return {"execution_id": current.id, "status": current.status.value}

        await self.store.update_execution_status(
            execution.id,
            ExecutionStatus.COMPLETED,
            output=result.output,
            current_step=result.total_steps,
            total_steps=result.total_steps,
            progress=100,
            completed_at=utcnow(),
        )
        logger.info(f"Execution {execution.id} completed")
        return {
            "execution_id": execution.id,
            "status": ExecutionStatus.COMPLETED.value,
            "tokens_used": result.tokens_used,
            "cost": result.cost,
        }

    async def _settled_or_current(
        self, execution_id: str, target: ExecutionStatus, job: QueueJob
    ) -> Execution:
        """Re-read the execution before writing ``target``.

        A terminal execution is returned as is and must not be written again;
        anything else is returned only when ``target`` is a legal next state.
        """
        current = await self.store.get_execution_by_id(execution_id)
        if current is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        if current.is_terminal:
            logger.info(
                f"Execution {execution_id} became {current.status.value} during job {job.id}; "
                f"not moving it to {target.value}"
            )
            return current
        if current.status != target and not can_transition(current.status, target):
            raise ValueError(
                f"Illegal execution transition {current.status.value} -> {target.value}"
            )
        return current

    async def handle_failed(self, job: QueueJob, error: str, final: bool) -> None:
        """Mark the execution failed once the queue gives up on its job."""
        if not final:
            return
        execution_id = job.data.get("execution_id")
        if not execution_id:
            return
        execution = await self.store.get_execution_by_id(execution_id)
        if execution is None or execution.is_terminal:
            return
        await self.store.update_execution_status(
            execution_id,
            ExecutionStatus.FAILED,
            error=error,
            error_stack="\n".join(job.stacktrace) or None,
            completed_at=utcnow(),
        )
        logger.error(f"Execution {execution_id} failed after job {job.id} gave up: {error}")


async def process_workflow_job(
    job: QueueJob, store: ExecutionStore, engine: WorkflowEngine
) -> Dict[str, Any]:
    return await WorkflowJobProcessor(store, engine)(job)
