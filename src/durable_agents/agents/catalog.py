"""Agent types served by the registry."""

from __future__ import annotations

import httpx

from durable_agents.agents.executors.base import AgentDefinition
from durable_agents.agents.executors.echo import EchoExecutor
from durable_agents.agents.executors.health import HealthExecutor, build_health_routes
from durable_agents.agents.models import AgentMetadata
from durable_agents.config import HealthSettings, Settings


def echo_definition() -> AgentDefinition:
    return AgentDefinition(
        metadata=AgentMetadata(
            type="echo",
            version="1.0.0",
            description="Echoes task payloads back as results",
            tools=("echo",),
        ),
        executor_factory=lambda instance: EchoExecutor(),
    )


def health_definition(
    settings: HealthSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AgentDefinition:
    return AgentDefinition(
        metadata=AgentMetadata(
            type="health",
            version="1.0.0",
            description="Health monitoring, endpoint checks, and diagnostics",
            tools=("checkEndpoint", "runHealthScan", "getHealthReport"),
        ),
        executor_factory=lambda instance: HealthExecutor(
            state=instance.state,
            logs=instance.logs,
            settings=settings,
            clock=instance.clock,
            transport=transport,
        ),
        routes=build_health_routes,
    )


def default_definitions(
    settings: Settings,
    *,
    health_transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[AgentDefinition, ...]:
    """Definitions in registration order."""

    return (
        echo_definition(),
        health_definition(settings.health, transport=health_transport),
    )
