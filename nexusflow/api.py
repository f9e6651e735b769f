"""FastAPI routes over the workflow service."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .access import Caller, Role
from .errors import AuthenticationError, NexusflowError, ValidationError
from .service import WorkflowService

logger = logging.getLogger(__name__)


class CreateTemplateRequest(BaseModel):
    name: str
    graph: Dict[str, Any]
    description: Optional[str] = None
    shared: bool = False
    organization_id: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    version: Optional[str] = None


class ExecuteRequest(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict)
    execution_mode: str = "async"
    priority: str = "normal"
    organization_id: Optional[str] = None


def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_organization_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Caller:
    """Build the caller from identity headers set by the session layer."""
    if not x_user_id:
        raise AuthenticationError("Authentication required")
    try:
        role = Role(x_user_role) if x_user_role else Role.MEMBER
    except ValueError as e:
        raise ValidationError(f"Unknown role: {x_user_role}") from e
    return Caller(id=x_user_id, organization_id=x_organization_id or None, role=role)


def get_service(request: Request) -> WorkflowService:
    return request.app.state.service


def create_app(service: Optional[WorkflowService] = None) -> FastAPI:
    app = FastAPI(title="nexusflow")
    app.state.service = service or WorkflowService()

    @app.exception_handler(NexusflowError)
    async def handle_nexusflow_error(request: Request, exc: NexusflowError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=ValidationError("Invalid request payload").to_payload(),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500, content={"error": "Internal server error", "kind": "internal_error"}
        )

    @app.get("/healthz")
    async def healthz() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/workflows/templates", status_code=201)
    async def create_template(
        body: CreateTemplateRequest,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        template = await svc.create_template(caller, **body.model_dump())
        return template.model_dump(mode="json")

    @app.get("/workflows/templates")
    async def list_templates(
        caller: Caller = Depends(get_caller), svc: WorkflowService = Depends(get_service)
    ):
        templates = await svc.list_templates(caller)
        return {"templates": [t.model_dump(mode="json") for t in templates]}

    @app.post("/workflows/{template_id}/execute", status_code=202)
    async def execute_workflow(
        template_id: str,
        body: ExecuteRequest,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        result = await svc.execute_workflow(
            caller,
            template_id,
            input=body.input,
            execution_mode=body.execution_mode,
            priority=body.priority,
            organization_id=body.organization_id,
        )
        return {
            "executionId": result.execution.id,
            "jobId": result.job_id,
            "status": result.execution.status.value,
        }

    @app.get("/workflows/executions")
    async def list_executions(
        template_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        executions = await svc.list_executions(
            caller,
            template_id=template_id,
            organization_id=organization_id,
            user_id=user_id,
            limit=limit,
        )
        return {"executions": [e.model_dump(mode="json") for e in executions]}

    @app.get("/workflows/executions/{execution_id}")
    async def get_execution(
        execution_id: str,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        execution, steps = await svc.get_execution(caller, execution_id)
        return {
            "execution": execution.model_dump(mode="json"),
            "steps": [s.model_dump(mode="json") for s in steps],
        }

    @app.post("/workflows/executions/{execution_id}/cancel")
    async def cancel_execution(
        execution_id: str,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        execution = await svc.cancel_execution(caller, execution_id)
        return execution.model_dump(mode="json")

    @app.get("/jobs/{execution_id}/status")
    async def stream_status(
        execution_id: str,
        request: Request,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        frames = await svc.stream_status(caller, execution_id, request.is_disconnected)
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/queues/{queue_name}/stats")
    async def queue_stats(
        queue_name: str,
        caller: Caller = Depends(get_caller),
        svc: WorkflowService = Depends(get_service),
    ):
        stats = await svc.get_queue_stats(caller, queue_name)
        return stats.model_dump()

    return app
