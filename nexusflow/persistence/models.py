"""Data models for persisted templates, executions and steps."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..constants import DEFAULT_LIST_LIMIT, DEFAULT_TEMPLATE_VERSION, MAX_LIST_LIMIT
from ..errors import ValidationError
from ..graph import WorkflowGraph


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
}


def can_transition(current: ExecutionStatus | str, target: ExecutionStatus | str) -> bool:
    """Return ``True`` when ``current -> target`` respects the state machine."""
    return ExecutionStatus(target) in _ALLOWED_TRANSITIONS.get(ExecutionStatus(current), set())


class ScopedVisibility(BaseModel):
    """Template visible only inside one organization."""

    kind: Literal["scoped"] = "scoped"
    organization_id: str


class SharedVisibility(BaseModel):
    """Template visible to every organization."""

    kind: Literal["shared"] = "shared"


TemplateVisibility = Annotated[
    Union[ScopedVisibility, SharedVisibility], Field(discriminator="kind")
]


class WorkflowTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    visibility: TemplateVisibility
    graph: WorkflowGraph
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None
    tags: list[str] = Field(default_factory=list)
    category: Optional[str] = None
    version: str = DEFAULT_TEMPLATE_VERSION
    created_by: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def organization_id(self) -> Optional[str]:
        if isinstance(self.visibility, ScopedVisibility):
            return self.visibility.organization_id
        return None


class ExecutionMetadata(BaseModel):
    execution_mode: Literal["sync", "async"] = "async"
    priority: Literal["low", "normal", "high"] = "normal"


class Execution(BaseModel):
    """One run of a template against a concrete input."""

    id: str = Field(default_factory=new_id)
    workflow_template_id: str
    organization_id: Optional[str] = None
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None
    error_stack: Optional[str] = None
    progress: Optional[int] = None
    current_step: Optional[int] = None
    total_steps: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Optional[ExecutionMetadata] = None
    job_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionStep(BaseModel):
    """Record of a single graph-node invocation."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_name: str
    step_type: Optional[str] = None
    step_index: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    tool_name: Optional[str] = None
    llm_model: Optional[str] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    duration_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# Fields ``update_execution_status`` may overwrite besides ``status``.
EXECUTION_UPDATE_FIELDS = frozenset(
    {
        "output",
        "error",
        "error_stack",
        "current_step",
        "total_steps",
        "progress",
        "started_at",
        "completed_at",
        "job_id",
    }
)

STEP_UPDATE_FIELDS = frozenset(
    {
        "output",
        "error",
        "completed_at",
        "duration_ms",
        "tokens_used",
        "cost",
        "input",
        "started_at",
    }
)

TEMPLATE_UPDATE_FIELDS = frozenset(
    {
        "name",
        "description",
        "visibility",
        "graph",
        "input_schema",
        "output_schema",
        "tags",
        "category",
        "version",
        "is_active",
    }
)


def require_uuid(value: str, label: str) -> str:
    """Raise ``ValidationError`` unless ``value`` is a well-formed UUID."""
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError) as exc:
        raise ValidationError(f"Invalid {label}: {value!r}") from exc
    return str(value)


def clamp_limit(limit: Optional[int]) -> int:
    if not limit or limit < 1:
        return DEFAULT_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


def check_update_fields(updates: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(updates) - allowed
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
