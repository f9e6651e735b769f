"""In-memory implementation of the execution store."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ..errors import NotFoundError
from .models import (
    EXECUTION_UPDATE_FIELDS,
    STEP_UPDATE_FIELDS,
    TEMPLATE_UPDATE_FIELDS,
    Execution,
    ExecutionMetadata,
    ExecutionStatus,
    ExecutionStep,
    ScopedVisibility,
    SharedVisibility,
    WorkflowTemplate,
    check_update_fields,
    clamp_limit,
    require_uuid,
    utcnow,
)
from .repository import ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Keep templates, executions and steps in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._templates: Dict[str, WorkflowTemplate] = {}
        self._executions: Dict[str, Execution] = {}
        self._steps: Dict[str, ExecutionStep] = {}
        # insertion order breaks ties between equal created_at values
        self._orders: Dict[str, int] = {}

    def _order_of(self, record_id: str) -> int:
        return self._orders.setdefault(record_id, len(self._orders))

    # ------------------------------------------------------------------
    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        stored = template.model_copy(deep=True)
        self._templates[stored.id] = stored
        self._order_of(stored.id)
        return stored.model_copy(deep=True)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def update_template(self, template_id: str, **updates: Any) -> WorkflowTemplate:
        check_update_fields(updates, TEMPLATE_UPDATE_FIELDS)
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(f"Workflow template not found: {template_id}")
        data = template.model_dump()
        data.update(updates)
        data["updated_at"] = utcnow()
        updated = WorkflowTemplate.model_validate(data)
        self._templates[template_id] = updated
        return updated.model_copy(deep=True)

    async def list_templates(
        self, organization_id: Optional[str] = None, include_shared: bool = True
    ) -> list[WorkflowTemplate]:
        result = []
        for template in self._templates.values():
            if not template.is_active:
                continue
            if organization_id is not None:
                visibility = template.visibility
                scoped_match = (
                    isinstance(visibility, ScopedVisibility)
                    and visibility.organization_id == organization_id
                )
                shared_match = include_shared and isinstance(visibility, SharedVisibility)
                if not (scoped_match or shared_match):
                    continue
            result.append(template)
        result.sort(key=lambda t: (t.created_at, self._order_of(t.id)), reverse=True)
        return [t.model_copy(deep=True) for t in result]

    # ------------------------------------------------------------------
    async def create_execution(
        self,
        template_id: str,
        organization_id: Optional[str],
        user_id: str,
        input: dict,
        metadata: ExecutionMetadata | None = None,
    ) -> Execution:
        require_uuid(template_id, "workflow template id")
        execution = Execution(
            workflow_template_id=template_id,
            organization_id=organization_id,
            user_id=user_id,
            status=ExecutionStatus.PENDING,
            input=input or {},
            metadata=metadata,
        )
        self._executions[execution.id] = execution
        self._order_of(execution.id)
        return execution.model_copy(deep=True)

    async def update_execution_status(
        self, execution_id: str, status: ExecutionStatus, **updates: Any
    ) -> Execution:
        check_update_fields(updates, EXECUTION_UPDATE_FIELDS)
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        execution.status = ExecutionStatus(status)
        for key, value in updates.items():
            setattr(execution, key, value)
        return execution.model_copy(deep=True)

    async def get_execution_by_id(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        template_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Execution]:
        matches = [
            e
            for e in self._executions.values()
            if (template_id is None or e.workflow_template_id == template_id)
            and (organization_id is None or e.organization_id == organization_id)
            and (user_id is None or e.user_id == user_id)
        ]
        matches.sort(key=lambda e: (e.created_at, self._order_of(e.id)), reverse=True)
        return [e.model_copy(deep=True) for e in matches[: clamp_limit(limit)]]

    # ------------------------------------------------------------------
    async def add_execution_step(self, step: ExecutionStep) -> ExecutionStep:
        if step.execution_id not in self._executions:
            raise NotFoundError(f"Execution not found: {step.execution_id}")
        stored = step.model_copy(deep=True)
        if stored.started_at is None:
            stored.started_at = utcnow()
        if stored.status == ExecutionStatus.COMPLETED and stored.completed_at is None:
            stored.completed_at = utcnow()
        self._steps[stored.id] = stored
        return stored.model_copy(deep=True)

    async def update_execution_step(
        self, step_id: str, status: ExecutionStatus, **updates: Any
    ) -> ExecutionStep:
        check_update_fields(updates, STEP_UPDATE_FIELDS)
        step = self._steps.get(step_id)
        if step is None:
            raise NotFoundError(f"Execution step not found: {step_id}")
        step.status = ExecutionStatus(status)
        for key, value in updates.items():
            setattr(step, key, value)
        return step.model_copy(deep=True)

    async def list_execution_steps(self, execution_id: str) -> list[ExecutionStep]:
        steps = [s for s in self._steps.values() if s.execution_id == execution_id]
        steps.sort(key=lambda s: s.step_index)
        return [s.model_copy(deep=True) for s in steps]

