"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

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

TEMPLATE_JSON_COLUMNS = ("visibility", "graph", "input_schema", "output_schema", "tags")
EXECUTION_JSON_COLUMNS = ("input", "output", "metadata")
STEP_JSON_COLUMNS = ("input", "output")

TEMPLATE_COLUMNS = (
    "id",
    "name",
    "description",
    "organization_id",
    "visibility",
    "graph",
    "input_schema",
    "output_schema",
    "tags",
    "category",
    "version",
    "created_by",
    "is_active",
    "created_at",
    "updated_at",
)
EXECUTION_COLUMNS = (
    "id",
    "workflow_template_id",
    "organization_id",
    "user_id",
    "status",
    "input",
    "output",
    "error",
    "error_stack",
    "progress",
    "current_step",
    "total_steps",
    "created_at",
    "started_at",
    "completed_at",
    "metadata",
    "job_id",
)
STEP_COLUMNS = (
    "id",
    "execution_id",
    "step_name",
    "step_type",
    "step_index",
    "status",
    "input",
    "output",
    "error",
    "tool_name",
    "llm_model",
    "tokens_used",
    "cost",
    "duration_ms",
    "started_at",
    "completed_at",
)


def _to_db(column: str, value: Any, json_columns: Iterable[str]) -> Any:
    if column in json_columns:
        if isinstance(value, BaseModel):
            return value.model_dump_json()
        return json.dumps(value, default=str) if value is not None else None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _from_row(row: sqlite3.Row, json_columns: Iterable[str]) -> dict[str, Any]:
    data = dict(row)
    for column in json_columns:
        if data.get(column) is not None:
            data[column] = json.loads(data[column])
    return data


class SQLiteExecutionStore(ExecutionStore):
    """Persist templates, executions and steps using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                organization_id TEXT,
                visibility TEXT NOT NULL,
                graph TEXT NOT NULL,
                input_schema TEXT,
                output_schema TEXT,
                tags TEXT,
                category TEXT,
                version TEXT NOT NULL,
                created_by TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                workflow_template_id TEXT NOT NULL,
                organization_id TEXT,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                error_stack TEXT,
                progress INTEGER,
                current_step INTEGER,
                total_steps INTEGER,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                metadata TEXT,
                job_id TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_steps (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                step_name TEXT NOT NULL,
                step_type TEXT,
                step_index INTEGER NOT NULL,
                status TEXT NOT NULL,
                input TEXT,
                output TEXT,
                error TEXT,
                tool_name TEXT,
                llm_model TEXT,
                tokens_used INTEGER,
                cost REAL,
                duration_ms INTEGER,
                started_at TEXT,
                completed_at TEXT,
                UNIQUE (execution_id, step_index)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_filters "
            "ON workflow_executions(workflow_template_id, organization_id, user_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _insert(
        self, table: str, columns: tuple[str, ...], data: dict, json_columns: Iterable[str]
    ) -> None:
        placeholders = ", ".join("?" for _ in columns)
        await asyncio.to_thread(
            self._execute,
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            *(_to_db(c, data.get(c), json_columns) for c in columns),
        )

    async def _update(
        self, table: str, record_id: str, data: dict, json_columns: Iterable[str]
    ) -> int:
        assignments = ", ".join(f"{column} = ?" for column in data)
        return await asyncio.to_thread(
            self._execute,
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            *(_to_db(c, v, json_columns) for c, v in data.items()),
            record_id,
        )

    # ------------------------------------------------------------------
    # Templates
    def _template_from_row(self, row: sqlite3.Row) -> WorkflowTemplate:
        data = _from_row(row, TEMPLATE_JSON_COLUMNS)
        data.pop("organization_id", None)
        data["is_active"] = bool(data["is_active"])
        data["tags"] = data.get("tags") or []
        return WorkflowTemplate.model_validate(data)

    async def create_template(self, template: WorkflowTemplate) -> WorkflowTemplate:
        data = dict(template)
        data["organization_id"] = template.organization_id
        await self._insert("workflow_templates", TEMPLATE_COLUMNS, data, TEMPLATE_JSON_COLUMNS)
        return template

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_templates WHERE id = ?", template_id
        )
        return self._template_from_row(row) if row else None

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
        query = "SELECT * FROM workflow_templates WHERE is_active = 1"
        params: list[Any] = []
        if organization_id is not None:
            if include_shared:
                query += " AND (organization_id = ? OR json_extract(visibility, '$.kind') = 'shared')"
            else:
                query += " AND organization_id = ?"
            params.append(organization_id)
        query += " ORDER BY created_at DESC, rowid DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._template_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    def _execution_from_row(self, row: sqlite3.Row) -> Execution:
        data = _from_row(row, EXECUTION_JSON_COLUMNS)
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
        changed = await self._update(
            "workflow_executions", execution_id, data, EXECUTION_JSON_COLUMNS
        )
        if not changed:
            raise NotFoundError(f"Execution not found: {execution_id}")
        execution = await self.get_execution_by_id(execution_id)
        assert execution is not None
        return execution

    async def get_execution_by_id(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_executions WHERE id = ?", execution_id
        )
        return self._execution_from_row(row) if row else None

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
                conditions.append(f"{column} = ?")
                params.append(value)
        query = "SELECT * FROM workflow_executions"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        params.append(clamp_limit(limit))
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._execution_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Steps
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
        changed = await self._update("workflow_execution_steps", step_id, data, STEP_JSON_COLUMNS)
        if not changed:
            raise NotFoundError(f"Execution step not found: {step_id}")
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_execution_steps WHERE id = ?", step_id
        )
        return ExecutionStep.model_validate(_from_row(row, STEP_JSON_COLUMNS))

    async def list_execution_steps(self, execution_id: str) -> list[ExecutionStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_execution_steps WHERE execution_id = ? ORDER BY step_index",
            execution_id,
        )
        return [ExecutionStep.model_validate(_from_row(r, STEP_JSON_COLUMNS)) for r in rows]

    def close(self) -> None:
        self._conn.close()
