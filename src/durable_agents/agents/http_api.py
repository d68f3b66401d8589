"""HTTP surface of one agent instance."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from durable_agents.agents.errors import TaskNotFoundError, TaskStateError, TaskValidationError
from durable_agents.agents.models import LogLevel, TaskStatus
from durable_agents.storage.common import to_utc_aware

if TYPE_CHECKING:
    from durable_agents.agents.instance import AgentInstance

logger = logging.getLogger(__name__)


class TaskCreateBody(BaseModel):
    """JSON body of ``POST /tasks``; ``name`` is checked by the lifecycle manager."""

    model_config = ConfigDict(populate_by_name=True)

    name: str | None = None
    payload: Any = None
    max_retries: int | None = Field(default=None, alias="maxRetries")
    schedule_for: datetime | None = Field(default=None, alias="scheduleFor")


def build_agent_app(instance: AgentInstance) -> FastAPI:
    """Build the FastAPI app routed to ``instance``."""

    app = FastAPI(
        title=f"{instance.agent_type} agent",
        version=instance.metadata.version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.middleware("http")
    async def report_unhandled_errors(request: Request, call_next: Any) -> Any:
        try:
            return await call_next(request)
        except Exception as error:  # noqa: BLE001 - converted into the 500 response body
            logger.exception(
                "Request failed type=%s path=%s",
                instance.agent_type,
                request.url.path,
            )
            log_error = instance.logs.try_log(
                LogLevel.ERROR,
                "Request failed",
                {"error": str(error), "path": request.url.path},
            )
            if log_error is not None:
                logger.warning("Instance log write failed (Request failed): %s", log_error)
            return JSONResponse(status_code=500, content={"error": str(error) or "Internal error"})

    @app.exception_handler(TaskValidationError)
    async def handle_validation(request: Request, error: TaskValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(error)})

    @app.exception_handler(TaskNotFoundError)
    async def handle_not_found(request: Request, error: TaskNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Task not found"})

    @app.exception_handler(TaskStateError)
    async def handle_state(request: Request, error: TaskStateError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(error)})

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request,
        error: RequestValidationError,
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": _describe_validation(error)})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http(request: Request, error: StarletteHTTPException) -> JSONResponse:
        message = "Not found" if error.status_code == 404 else str(error.detail)
        return JSONResponse(status_code=error.status_code, content={"error": message})

    @app.get("/metadata")
    async def get_metadata() -> dict[str, Any]:
        return instance.metadata.to_json()

    @app.get("/state")
    async def get_state() -> dict[str, Any]:
        return instance.get_state().to_json()

    @app.get("/tasks")
    async def list_tasks(
        status: TaskStatus | None = None,
        limit: int = Query(default=50, ge=0),
    ) -> dict[str, Any]:
        tasks = instance.tasks.list_recent(status=status, limit=limit)
        return {"tasks": [task.to_json() for task in tasks], "total": len(tasks)}

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str) -> dict[str, Any]:
        task = instance.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task.to_json()

    @app.post("/tasks", status_code=201)
    async def create_task(body: TaskCreateBody | None = None) -> dict[str, Any]:
        body = body or TaskCreateBody()
        schedule_for = to_utc_aware(body.schedule_for) if body.schedule_for else None
        task = instance.submit(
            body.name,  # type: ignore[arg-type]
            body.payload,
            max_retries=body.max_retries,
            schedule_for=schedule_for,
        )
        return {"taskId": task.id, "status": "created"}

    @app.post("/tasks/{task_id}/cancel")
    async def cancel_task(task_id: str) -> dict[str, Any]:
        return instance.manager.cancel_task(task_id).to_json()

    @app.get("/logs")
    async def list_logs(
        level: LogLevel | None = None,
        limit: int = Query(default=100, ge=0),
    ) -> dict[str, Any]:
        entries = instance.logs.list_recent(level=level, limit=limit)
        return {"logs": [entry.to_json() for entry in entries]}

    if instance.definition.routes is not None:
        app.include_router(instance.definition.routes(instance))

    return app


def _describe_validation(error: RequestValidationError) -> str:
    details = error.errors()
    if not details:
        return "Invalid request"
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message
