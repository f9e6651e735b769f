"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from .models import (
    Execution,
    ExecutionMetadata,
    ExecutionStatus,
    ExecutionStep,
    WorkflowTemplate,
)


class ExecutionStore(Protocol):
    """Protocol for execution persistence backends.

    The store is a dumb persistence facade: it overwrites whatever fields it is
    given and never checks status transitions. The worker is the only writer
    that has to respect the execution state machine.
    """

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        """Persist a new workflow template."""

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        """Return a template by id, active or not."""

    async def update_template(self, template_id: str, **updates: Any) -> WorkflowTemplate:
        """Overwrite template fields; raises ``NotFoundError`` for unknown ids."""

    async def deactivate_template(self, template_id: str) -> WorkflowTemplate:
        """Hide a template from listings; templates are never deleted."""
        return await self.update_template(template_id, is_active=False)

    async def list_templates(
        self, organization_id: Optional[str] = None, include_shared: bool = True
    ) -> list[WorkflowTemplate]:
        """Active templates visible to ``organization_id``, newest first."""

    async def create_execution(
        self,
        template_id: str,
        organization_id: Optional[str],
        user_id: str,
        input: dict,
        metadata: ExecutionMetadata | None = None,
    ) -> Execution:
        """Persist a new execution in ``pending`` state."""

    async def update_execution_status(
        self, execution_id: str, status: ExecutionStatus, **updates: Any
    ) -> Execution:
        """Overwrite status and listed fields unconditionally."""

    async def get_execution_by_id(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        template_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Execution]:
        """Return executions matching all given filters, newest first."""

    async def add_execution_step(self, step: ExecutionStep) -> ExecutionStep:
        """Append a step record to an execution."""

    async def update_execution_step(
        self, step_id: str, status: ExecutionStatus, **updates: Any
    ) -> ExecutionStep:
        """Overwrite step status and listed fields."""

    async def list_execution_steps(self, execution_id: str) -> list[ExecutionStep]:
        """Steps of an execution ordered by step index."""
