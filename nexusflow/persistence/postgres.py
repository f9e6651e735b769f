"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Iterable, Optional

import asyncpg
from pydantic import BaseModel

from ..errors import NotFoundError
from .models import (
    EXECUTION_UPDATE_FIELDS,
    STEP_UPDATE_FIELDS,
    TEMPLATE_UPDATE_FIELDS,
    Execution,
    ExecutionMetadata,
    ExecutionStatus,
    ExecutionStep,
    WorkflowTemplate,
    check_update_fields,
    clamp_limit,
    require_uuid,
    utcnow,
)
from .repository import ExecutionStore
from .sqlite import (
    EXECUTION_COLUMNS,
    EXECUTION_JSON_COLUMNS,
    STEP_COLUMNS,
    STEP_JSON_COLUMNS,
    TEMPLATE_COLUMNS,
    TEMPLATE_JSON_COLUMNS,
)


def _to_pg(column: str, value: Any, json_columns: Iterable[str]) -> Any:
    if column in json_columns:
        if isinstance(value, BaseModel):
            return value.model_dump_json()
        return json.dumps(value, default=str) if value is not None else None
    if isinstance(value, Enum):
        return value.value
    return value


def _from_record(record: asyncpg.Record, json_columns: Iterable[str]) -> dict[str, Any]:
    data = dict(record)
    for column in json_columns:
        if isinstance(data.get(column), str):
            data[column] = json.loads(data[column])
    return data


class PostgresExecutionStore(ExecutionStore):
    """Persist templates, executions and steps using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                organization_id TEXT,
                visibility JSONB NOT NULL,
                graph JSONB NOT NULL,
                input_schema JSONB,
                output_schema JSONB,
                tags JSONB,
                category TEXT,
                version TEXT NOT NULL,
                created_by TEXT,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                workflow_template_id TEXT NOT NULL,
                organization_id TEXT,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                error_stack TEXT,
                progress INTEGER,
                current_step INTEGER,
                total_steps INTEGER,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                metadata JSONB,
                job_id TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_steps (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                step_name TEXT NOT NULL,
                step_type TEXT,
                step_index INTEGER NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                tool_name TEXT,
                llm_model TEXT,
                tokens_used INTEGER,
                cost DOUBLE PRECISION,
                duration_ms INTEGER,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                UNIQUE (execution_id, step_index)
            )
            """
        )

    async def _insert(
        self, table: str, columns: tuple[str, ...], data: dict, json_columns: Iterable[str]
    ) -> None:
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                *(_to_pg(c, data.get(c), json_columns) for c in columns),
            )
        finally:
            await conn.close()

    async def _update(
        self, table: str, record_id: str, data: dict, json_columns: Iterable[str]
    ) -> asyncpg.Record | None:
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(data, start=1))
        conn = await self._connect()
        try:
            return await conn.fetchrow(
                f"UPDATE {table} SET {assignments} WHERE id = ${len(data) + 1} RETURNING *",
                *(_to_pg(c, v, json_columns) for c, v in data.items()),
                record_id,
            )
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    def _template(self, record: asyncpg.Record) -> WorkflowTemplate:
        data = _from_record(record, TEMPLATE_JSON_COLUMNS)
        data.pop("organization_id", None)
        data["tags"] = data.get("tags") or []
        return WorkflowTemplate.model_validate(data)

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        data = dict(template)
        data["organization_id"] = template.organization_id
        await self._insert("workflow_templates", TEMPLATE_COLUMNS, data, TEMPLATE_JSON_COLUMNS)
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        rows = await self._fetch("SELECT * FROM workflow_templates WHERE id = $1", template_id)
        return self._template(rows[0]) if rows else None

    async def update_template(self, template_id: str, **updates: Any) -> WorkflowTemplate:
        check_update_fields(updates, TEMPLATE_UPDATE_FIELDS)
        current = await self.get_template(template_id)
        if current is None:
            raise NotFoundError(f"Workflow template not found: {template_id}")
        merged = WorkflowTemplate.model_validate(
            {**current.model_dump(), **updates, "updated_at": utcnow()}
        )
        data = {key: getattr(merged, key) for key in updates}
        data["updated_at"] = merged.updated_at
        data["organization_id"] = merged.organization_id
        await self._update("workflow_templates", template_id, data, TEMPLATE_JSON_COLUMNS)
        return merged

    async def list_templates(
        self, organization_id: Optional[str] = None, include_shared: bool = True
    ) -> list[WorkflowTemplate]:
        query = "SELECT * FROM workflow_templates WHERE is_active"
        params: list[Any] = []
        if organization_id is not None:
            if include_shared:
                query += " AND (organization_id = $1 OR visibility->>'kind' = 'shared')"
            else:
                query += " AND organization_id = $1"
            params.append(organization_id)
        query += " ORDER BY created_at DESC"
        return [self._template(r) for r in await self._fetch(query, *params)]

    # ------------------------------------------------------------------
    def _execution(self, record: asyncpg.Record) -> Execution:
        data = _from_record(record, EXECUTION_JSON_COLUMNS)
        data.pop("seq", None)
        return Execution.model_validate(data)

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
        await self._insert(
            "workflow_executions", EXECUTION_COLUMNS, dict(execution), EXECUTION_JSON_COLUMNS
        )
        return execution

    async def update_execution_status(
        self, execution_id: str, status: ExecutionStatus, **updates: Any
    ) -> Execution:
        check_update_fields(updates, EXECUTION_UPDATE_FIELDS)
        data = {"status": ExecutionStatus(status), **updates}
        record = await self._update("workflow_executions", execution_id, data, EXECUTION_JSON_COLUMNS)
        if record is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return self._execution(record)

    async def get_execution_by_id(self, execution_id: str) -> Execution | None:
        rows = await self._fetch("SELECT * FROM workflow_executions WHERE id = $1", execution_id)
        return self._execution(rows[0]) if rows else None

    async def list_executions(
        self,
        template_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50,
    ) -> list[Execution]:
        conditions = []
        params: list[Any] = []
        for column, value in (
            ("workflow_template_id", template_id),
            ("organization_id", organization_id),
            ("user_id", user_id),
        ):
            if value is not None:
                params.append(value)
                conditions.append(f"{column} = ${len(params)}")
        query = "SELECT * FROM workflow_executions"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        params.append(clamp_limit(limit))
        query += f" ORDER BY created_at DESC, seq DESC LIMIT ${len(params)}"
        return [self._execution(r) for r in await self._fetch(query, *params)]

    # ------------------------------------------------------------------
    async def add_execution_step(self, step: ExecutionStep) -> ExecutionStep:
        if await self.get_execution_by_id(step.execution_id) is None:
            raise NotFoundError(f"Execution not found: {step.execution_id}")
        stored = step.model_copy()
        if stored.started_at is None:
            stored.started_at = utcnow()
        if stored.status == ExecutionStatus.COMPLETED and stored.completed_at is None:
            stored.completed_at = utcnow()
        await self._insert(
            "workflow_execution_steps", STEP_COLUMNS, dict(stored), STEP_JSON_COLUMNS
        )
        return stored

    async def update_execution_step(
        self, step_id: str, status: ExecutionStatus, **updates: Any
    ) -> ExecutionStep:
        check_update_fields(updates, STEP_UPDATE_FIELDS)
        data = {"status": ExecutionStatus(status), **updates}
        record = await self._update("workflow_execution_steps", step_id, data, STEP_JSON_COLUMNS)
        if record is None:
            raise NotFoundError(f"Execution step not found: {step_id}")
        return ExecutionStep.model_validate(_from_record(record, STEP_JSON_COLUMNS))

    async def list_execution_steps(self, execution_id: str) -> list[ExecutionStep]:
        rows = await self._fetch(
            "SELECT * FROM workflow_execution_steps WHERE execution_id = $1 ORDER BY step_index",
            execution_id,
        )
        return [ExecutionStep.model_validate(_from_record(r, STEP_JSON_COLUMNS)) for r in rows]
