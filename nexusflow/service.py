"""Workflow service: the request-side operations behind the HTTP routes."""

from __future__ import annotations

import logging
import traceback
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import jsonschema
from pydantic import BaseModel

from .access import (
    Caller,
    Permission,
    authorize_execution,
    authorize_template,
    require_permission,
    scope_execution_filters,
)
from .config import NexusflowConfig, load_config
from .constants import QUEUE_NAMES, QUEUE_WORKFLOWS
from .errors import AuthorizationError, EnqueueError, NotFoundError, ValidationError
from .graph import WorkflowGraph
from .persistence import get_store
from .persistence.models import (
    Execution,
    ExecutionMetadata,
    ExecutionStatus,
    ExecutionStep,
    ScopedVisibility,
    SharedVisibility,
    WorkflowTemplate,
    require_uuid,
    utcnow,
)
from .persistence.repository import ExecutionStore
from .queue.manager import QueueManager, QueueStats, WorkflowJobData
from .status import DisconnectCheck, StatusPublisher
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)


class ExecuteResult(BaseModel):
    execution: Execution
    job_id: str


def _check_schema(schema: Optional[dict], label: str) -> None:
    if schema is None:
        return
    try:
        jsonschema.validators.validator_for(schema).check_schema(schema)
    except jsonschema.SchemaError as e:
        raise ValidationError(f"Invalid {label}: {e.message}") from e


class WorkflowService:
    """Template management, execution submission and execution reads.

    Every method takes the calling identity and enforces the access rules
    before touching the store.
    """

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        queue: Optional[QueueManager] = None,
        config: Optional[NexusflowConfig] = None,
        tools: Optional[ToolRegistry] = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store or get_store(config=self.config)
        self.queue = queue or QueueManager(config=self.config)
        self.tools = tools or default_registry()
        self.publisher = StatusPublisher(
            self.store,
            poll_interval=self.config.stream.poll_interval,
            close_grace=self.config.stream.close_grace,
        )

    # ------------------------------------------------------------------
    # templates
    def _parse_graph(self, graph: Any) -> WorkflowGraph:
        parsed = WorkflowGraph.parse(graph)
        parsed.validate_structure(self.tools.names())
        return parsed

    def _resolve_visibility(self, caller: Caller, shared: bool, organization_id: Optional[str]):
        if shared:
            if not caller.is_super_admin:
                raise AuthorizationError("Only super admins can create shared templates")
            return SharedVisibility()
        org = organization_id or caller.organization_id
        if org is None:
            raise ValidationError("An organization is required for a scoped template")
        if org != caller.organization_id and not caller.is_super_admin:
            raise AuthorizationError("Cannot create templates for another organization")
        return ScopedVisibility(organization_id=org)

    async def create_template(
        self,
        caller: Caller,
        name: str,
        graph: Any,
        description: Optional[str] = None,
        shared: bool = False,
        organization_id: Optional[str] = None,
        input_schema: Optional[dict] = None,
        output_schema: Optional[dict] = None,
        tags: Optional[List[str]] = None,
        category: Optional[str] = None,
        version: Optional[str] = None,
    ) -> WorkflowTemplate:
        require_permission(caller, Permission.WORKFLOWS_MANAGE)
        if not name or not name.strip():
            raise ValidationError("Template name is required")
        _check_schema(input_schema, "input schema")
        _check_schema(output_schema, "output schema")
        template = WorkflowTemplate(
            name=name.strip(),
            description=description,
            visibility=self._resolve_visibility(caller, shared, organization_id),
            graph=self._parse_graph(graph),
            input_schema=input_schema,
            output_schema=output_schema,
            tags=tags or [],
            category=category,
            created_by=caller.id,
            **({"version": version} if version else {}),
        )
        created = await self.store.create_template(template)
        logger.info(f"Workflow template created: {created.id} ({created.name})")
        return created

    async def _managed_template(self, caller: Caller, template_id: str) -> WorkflowTemplate:
        require_permission(caller, Permission.WORKFLOWS_MANAGE)
        template = await self.get_template(caller, template_id)
        if isinstance(template.visibility, SharedVisibility) and not caller.is_super_admin:
            raise AuthorizationError("Only super admins can modify shared templates")
        return template

    async def update_template(
        self, caller: Caller, template_id: str, **updates: Any
    ) -> WorkflowTemplate:
        await self._managed_template(caller, template_id)
        if "graph" in updates:
            updates["graph"] = self._parse_graph(updates["graph"])
        if "visibility" in updates and not caller.is_super_admin:
            raise AuthorizationError("Only super admins can change template visibility")
        _check_schema(updates.get("input_schema"), "input schema")
        _check_schema(updates.get("output_schema"), "output schema")
        return await self.store.update_template(template_id, **updates)

    async def deactivate_template(self, caller: Caller, template_id: str) -> WorkflowTemplate:
        await self._managed_template(caller, template_id)
        template = await self.store.deactivate_template(template_id)
        logger.info(f"Workflow template deactivated: {template_id}")
        return template

    async def get_template(self, caller: Caller, template_id: str) -> WorkflowTemplate:
        require_permission(caller, Permission.WORKFLOWS_VIEW)
        require_uuid(template_id, "workflow template id")
        template = await self.store.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Workflow template not found: {template_id}")
        authorize_template(caller, template)
        return template

    async def list_templates(self, caller: Caller) -> List[WorkflowTemplate]:
        require_permission(caller, Permission.WORKFLOWS_VIEW)
        if caller.is_super_admin:
            return await self.store.list_templates()
        if caller.organization_id is None:
            templates = await self.store.list_templates()
            return [t for t in templates if isinstance(t.visibility, SharedVisibility)]
        return await self.store.list_templates(caller.organization_id, include_shared=True)

    # ------------------------------------------------------------------
    # executions
    def _resolve_organization(
        self, caller: Caller, organization_id: Optional[str]
    ) -> Optional[str]:
        if organization_id is None or organization_id == caller.organization_id:
            return caller.organization_id
        if not caller.is_super_admin:
            raise AuthorizationError("Cannot execute on behalf of another organization")
        return organization_id

    async def execute_workflow(
        self,
        caller: Caller,
        template_id: str,
        input: Optional[Dict[str, Any]] = None,
        execution_mode: str = "async",
        priority: str = "normal",
        organization_id: Optional[str] = None,
    ) -> ExecuteResult:
        """Create a pending execution and hand it to the workflows queue.

        When the queue rejects the job the execution is marked ``failed``
        before ``EnqueueError`` propagates, so it never stays pending.
        """
        require_permission(caller, Permission.WORKFLOWS_EXECUTE)
        if input is not None and not isinstance(input, dict):
            raise ValidationError("Execution input must be an object")
        template = await self.get_template(caller, template_id)
        if not template.is_active:
            raise ValidationError(f"Workflow template is inactive: {template_id}")
        try:
            metadata = ExecutionMetadata(execution_mode=execution_mode, priority=priority)
        except ValueError as e:
            raise ValidationError(f"Invalid execution options: {e}") from e

        execution = await self.store.create_execution(
            template.id,
            self._resolve_organization(caller, organization_id),
            caller.id,
            input or {},
            metadata,
        )
        execution = await self.store.update_execution_status(
            execution.id, ExecutionStatus.PENDING, job_id=execution.id
        )

        try:
            result = await self.queue.enqueue_workflow(
                WorkflowJobData(
                    execution_id=execution.id,
                    workflow_template_id=template.id,
                    workflow_name=template.name,
                    user_id=caller.id,
                    organization_id=execution.organization_id,
                    input=execution.input,
                )
            )
        except EnqueueError as e:
            await self.store.update_execution_status(
                execution.id,
                ExecutionStatus.FAILED,
                error=e.message,
                error_stack=traceback.format_exc(),
                job_id=None,
                completed_at=utcnow(),
            )
            logger.error(f"Execution {execution.id} failed to enqueue: {e.message}")
            raise

        logger.info(f"Execution {execution.id} queued as job {result.job_id}")
        return ExecuteResult(execution=execution, job_id=result.job_id)

    async def _readable_execution(self, caller: Caller, execution_id: str) -> Execution:
        require_permission(caller, Permission.WORKFLOWS_VIEW)
        require_uuid(execution_id, "execution id")
        execution = await self.store.get_execution_by_id(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        authorize_execution(caller, execution)
        return execution

    async def get_execution(
        self, caller: Caller, execution_id: str
    ) -> Tuple[Execution, List[ExecutionStep]]:
        execution = await self._readable_execution(caller, execution_id)
        steps = await self.store.list_execution_steps(execution_id)
        return execution, steps

    async def list_executions(
        self,
        caller: Caller,
        template_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        require_permission(caller, Permission.WORKFLOWS_VIEW)
        organization_id, user_id = scope_execution_filters(caller, organization_id, user_id)
        return await self.store.list_executions(
            template_id=template_id,
            organization_id=organization_id,
            user_id=user_id,
            limit=limit or 0,
        )

    async def cancel_execution(self, caller: Caller, execution_id: str) -> Execution:
        """Cancel a pending or running execution.

        A waiting job is removed from the queue; a running one stops at its
        next step boundary.
        """
        require_permission(caller, Permission.WORKFLOWS_EXECUTE)
        execution = await self._readable_execution(caller, execution_id)
        if execution.is_terminal:
            raise ValidationError(f"Execution already {execution.status.value}")
        cancelled = await self.store.update_execution_status(
            execution_id, ExecutionStatus.CANCELLED, completed_at=utcnow()
        )
        if execution.job_id:
            try:
                await self.queue.cancel_job(QUEUE_WORKFLOWS, execution.job_id)
            except NotFoundError:
                logger.debug(f"Job {execution.job_id} already gone from the queue")
        logger.info(f"Execution {execution_id} cancelled by {caller.id}")
        return cancelled

    async def stream_status(
        self,
        caller: Caller,
        execution_id: str,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[str]:
        """Check access, then return the SSE frame iterator for the execution."""
        await self._readable_execution(caller, execution_id)
        return self.publisher.stream(execution_id, is_disconnected)

    async def get_queue_stats(self, caller: Caller, queue_name: str) -> QueueStats:
        require_permission(caller, Permission.WORKFLOWS_MANAGE)
        if queue_name not in QUEUE_NAMES:
            raise NotFoundError(f"Unknown queue: {queue_name}")
        return await self.queue.get_queue_stats(queue_name)
