"""Gateway HTTP app: service discovery and forwarding to agent instances."""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from json import JSONDecodeError
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from durable_agents import __version__
from durable_agents.agents.errors import UnknownAgentTypeError
from durable_agents.agents.registry import AgentRegistry

logger = logging.getLogger(__name__)

_FORWARD_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def build_gateway_app(registry: AgentRegistry) -> FastAPI:
    """FastAPI app exposing ``/api``, ``/agents``, ``/health`` and per-type forwarding."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        for agent_type in registry.agent_types:
            registry.resolve(agent_type)
        logger.info("Gateway started with agent types: %s", ", ".join(registry.agent_types))
        yield
        await registry.close()

    app = FastAPI(
        title="durable-agents",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http(request: Request, error: StarletteHTTPException) -> JSONResponse:
        message = "Not found" if error.status_code == 404 else str(error.detail)
        return JSONResponse(status_code=error.status_code, content={"error": message})

    @app.get("/api")
    async def service_info() -> dict[str, Any]:
        return {
            "service": "durable-agents",
            "version": __version__,
            "agentTypes": list(registry.agent_types),
            "endpoints": {
                "agents": "/agents",
                "agent": "/agents/{type}/...",
                "health": "/health",
            },
        }

    @app.get("/agents")
    async def list_agents() -> dict[str, Any]:
        return {"agents": await registry.all_states(), "timestamp": _timestamp_ms()}

    @app.get("/health")
    async def health() -> dict[str, Any]:
        states = await registry.all_states()
        failing = {item["type"] for item in states if "error" in item["state"]}
        return {
            "status": "degraded" if failing else "healthy",
            "agents": [
                {"type": item["type"], "status": "error" if item["type"] in failing else "ok"}
                for item in states
            ],
            "timestamp": _timestamp_ms(),
        }

    @app.api_route("/agents/{agent_type}/{sub_path:path}", methods=_FORWARD_METHODS)
    async def forward(agent_type: str, sub_path: str, request: Request) -> Response:
        try:
            registry.parse_agent_type(agent_type)
        except UnknownAgentTypeError:
            return JSONResponse(
                status_code=404,
                content={"error": f"Unknown agent type: {agent_type}"},
            )

        body = None
        if request.method != "GET":
            try:
                body = await request.json()
            except (JSONDecodeError, UnicodeDecodeError):
                body = None
        try:
            response = await registry.forward(
                agent_type,
                f"/{sub_path}",
                method=request.method,
                body=body,
                instance_key=request.query_params.get("instance", "default"),
                params={
                    key: value
                    for key, value in request.query_params.items()
                    if key != "instance"
                },
            )
        except (httpx.HTTPError, ValueError, RuntimeError) as error:
            logger.warning("Forwarding to %s failed: %s", agent_type, error)
            return JSONResponse(status_code=400, content={"error": str(error)})
        return Response(
            content=response.content,
            status_code=response.status_code,
            media_type=response.headers.get("content-type"),
        )

    return app


def _timestamp_ms() -> int:
    return int(time.time() * 1000)
