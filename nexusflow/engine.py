"""Workflow engine: walks a template graph and records every step."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import jsonschema
from pydantic import BaseModel, Field

from .errors import EngineStepError, ExecutionCancelled, NotFoundError
from .graph import InputNode, LlmNode, Node, OutputNode, ToolNode
from .llm import LlmInvoker, PydanticAIInvoker, estimate_cost
from .persistence.models import (
    Execution,
    ExecutionStatus,
    ExecutionStep,
    WorkflowTemplate,
    can_transition,
    utcnow,
)
from .persistence.repository import ExecutionStore
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)


class EngineResult(BaseModel):
    success: bool
    output: Any = None
    total_steps: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    error: Optional[str] = None


class StepOutcome(BaseModel):
    """What a single node produced: the step output and the state updates."""

    output: Any = None
    updates: Dict[str, Any] = Field(default_factory=dict)
    tokens_used: int = 0
    cost: float = 0.0


class _PromptState(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _step_name(node: Node) -> str:
    return node.name or node.id


class WorkflowEngine:
    """Execute a template graph for one execution.

    The engine writes step records and progress counters through the store.
    Terminal execution status is left to the caller: a failing node surfaces as
    ``EngineStepError`` and a cancellation observed between steps surfaces as
    ``ExecutionCancelled``.

    Steps already recorded as completed for this execution are reused instead
    of re-run, so a redelivered job continues where the previous attempt
    stopped and step indices stay unique.
    """

    def __init__(
        self,
        store: ExecutionStore,
        tools: Optional[ToolRegistry] = None,
        llm: Optional[LlmInvoker] = None,
    ) -> None:
        self.store = store
        self.tools = tools or default_registry()
        self._llm = llm

    @property
    def llm(self) -> LlmInvoker:
        if self._llm is None:
            self._llm = PydanticAIInvoker()
        return self._llm

    async def execute(self, template: WorkflowTemplate, execution: Execution) -> EngineResult:
        order = template.graph.execution_order()
        total = len(order)
        previous = {
            step.step_index: step
            for step in await self.store.list_execution_steps(execution.id)
        }
        state: Dict[str, Any] = dict(execution.input)
        output: Any = None
        tokens = 0
        cost = 0.0

        for index, node in enumerate(order):
            prior = previous.get(index)
            if (
                prior is not None
                and prior.step_name == _step_name(node)
                and prior.status == ExecutionStatus.COMPLETED
            ):
                outcome = self._replay(node, prior)
                logger.debug(f"Reusing completed step {index} of execution {execution.id}")
            else:
                await self._check_cancelled(execution.id)
                outcome = await self._run_step(template, execution, node, index, state, prior)

            state.update(outcome.updates)
            tokens += outcome.tokens_used
            cost += outcome.cost
            if isinstance(node, OutputNode):
                output = outcome.output

            await self._check_cancelled(execution.id)
            await self.store.update_execution_status(
                execution.id,
                ExecutionStatus.RUNNING,
                current_step=index + 1,
                total_steps=total,
                progress=int((index + 1) * 100 / total),
            )

        if output is None:
            output = {key: value for key, value in state.items() if key not in execution.input}

        logger.info(
            f"Execution {execution.id} finished {total} steps "
            f"(tokens={tokens}, cost=${cost:.6f})"
        )
        return EngineResult(
            success=True, output=output, total_steps=total, tokens_used=tokens, cost=cost
        )

    async def _check_cancelled(self, execution_id: str) -> None:
        current = await self.store.get_execution_by_id(execution_id)
        if current is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        if current.status == ExecutionStatus.CANCELLED:
            raise ExecutionCancelled(f"Execution {execution_id} was cancelled")
        if not (
            current.status == ExecutionStatus.RUNNING
            or can_transition(current.status, ExecutionStatus.RUNNING)
        ):
            # settled elsewhere, e.g. failed by stall recovery
            raise ExecutionCancelled(
                f"Execution {execution_id} is already {current.status.value}"
            )

    async def _run_step(
        self,
        template: WorkflowTemplate,
        execution: Execution,
        node: Node,
        index: int,
        state: Dict[str, Any],
        prior: Optional[ExecutionStep],
    ) -> StepOutcome:
        started_at = utcnow()
        if prior is not None:
            # unfinished attempt from a previous delivery: re-run in place
            step = await self.store.update_execution_step(
                prior.id,
                ExecutionStatus.RUNNING,
                input=dict(state),
                error=None,
                started_at=started_at,
            )
        else:
            step = await self.store.add_execution_step(
                ExecutionStep(
                    execution_id=execution.id,
                    step_name=_step_name(node),
                    step_type=node.type,
                    step_index=index,
                    status=ExecutionStatus.RUNNING,
                    input=dict(state),
                    tool_name=node.tool if isinstance(node, ToolNode) else None,
                    llm_model=node.model if isinstance(node, LlmNode) else None,
                    started_at=started_at,
                )
            )

        started = time.monotonic()
        try:
            outcome = await self._dispatch(template, execution, node, state)
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            await self.store.update_execution_step(
                step.id,
                ExecutionStatus.FAILED,
                error=str(e),
                completed_at=utcnow(),
                duration_ms=duration_ms,
            )
            logger.error(f"Step {_step_name(node)} of execution {execution.id} failed: {e}")
            raise EngineStepError(str(e), _step_name(node), index) from e

        await self.store.update_execution_step(
            step.id,
            ExecutionStatus.COMPLETED,
            output=outcome.output,
            tokens_used=outcome.tokens_used or None,
            cost=outcome.cost or None,
            completed_at=utcnow(),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return outcome

    async def _dispatch(
        self,
        template: WorkflowTemplate,
        execution: Execution,
        node: Node,
        state: Dict[str, Any],
    ) -> StepOutcome:
        if isinstance(node, InputNode):
            return self._run_input(template, state)
        if isinstance(node, ToolNode):
            return await self._run_tool(node, state)
        if isinstance(node, LlmNode):
            return await self._run_llm(node, state)
        if isinstance(node, OutputNode):
            return self._run_output(template, node, state, set(execution.input))
        raise TypeError(f"Unsupported node type: {type(node).__name__}")

    def _run_input(self, template: WorkflowTemplate, state: Dict[str, Any]) -> StepOutcome:
        if template.input_schema:
            try:
                jsonschema.validate(state, template.input_schema)
            except jsonschema.ValidationError as e:
                raise ValueError(f"Input does not match schema: {e.message}") from e
        return StepOutcome(output=dict(state))

    async def _run_tool(self, node: ToolNode, state: Dict[str, Any]) -> StepOutcome:
        result = await self.tools.call(node.tool, {**state, **node.arguments})
        return StepOutcome(output=result, updates={node.output_key or node.id: result})

    async def _run_llm(self, node: LlmNode, state: Dict[str, Any]) -> StepOutcome:
        prompt = node.prompt.format_map(_PromptState(state))
        result = await self.llm.invoke(node.model, prompt, node.system_prompt)
        return StepOutcome(
            output=result.text,
            updates={node.output_key or node.id: result.text},
            tokens_used=result.total_tokens,
            cost=estimate_cost(node.model, result.input_tokens, result.output_tokens),
        )

    def _run_output(
        self,
        template: WorkflowTemplate,
        node: OutputNode,
        state: Dict[str, Any],
        input_keys: set,
    ) -> StepOutcome:
        if node.fields:
            missing = [source for source in node.fields.values() if source not in state]
            if missing:
                raise KeyError(f"Output references missing state keys: {', '.join(missing)}")
            result = {name: state[source] for name, source in node.fields.items()}
        else:
            result = {key: value for key, value in state.items() if key not in input_keys}
        if template.output_schema:
            try:
                jsonschema.validate(result, template.output_schema)
            except jsonschema.ValidationError as e:
                raise ValueError(f"Output does not match schema: {e.message}") from e
        return StepOutcome(output=result)

    def _replay(self, node: Node, step: ExecutionStep) -> StepOutcome:
        """Rebuild the state contribution of an already completed step."""
        updates: Dict[str, Any] = {}
        if isinstance(node, (ToolNode, LlmNode)):
            updates[node.output_key or node.id] = step.output
        return StepOutcome(
            output=step.output,
            updates=updates,
            tokens_used=step.tokens_used or 0,
            cost=step.cost or 0.0,
        )
