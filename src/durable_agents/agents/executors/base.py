"""Execution hook interface implemented by concrete agents."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from durable_agents.agents.models import AgentMetadata, Task

if TYPE_CHECKING:
    from fastapi import APIRouter

    from durable_agents.agents.instance import AgentInstance


@dataclass(slots=True)
class TaskOutcome:
    """Result of one execution attempt."""

    success: bool
    data: Any = None
    error: str | None = None
    duration_ms: int = 0


class TaskExecutor(Protocol):
    """Strategy invoked by the lifecycle manager for every attempt.

    Raising any exception, or returning an outcome with ``success=False``,
    sends the task down the retry path.
    """

    async def execute(self, task: Task) -> TaskOutcome:
        """Run one attempt of ``task``."""


@dataclass(slots=True)
class AgentDefinition:
    """Catalog entry binding an agent type to its metadata and executor.

    ``executor_factory`` receives the owning instance, so executors can use
    its state store and log. ``routes`` optionally contributes extra HTTP
    routes to the instance surface.
    """

    metadata: AgentMetadata
    executor_factory: Callable[[AgentInstance], TaskExecutor]
    routes: Callable[[AgentInstance], APIRouter] | None = None

    @property
    def agent_type(self) -> str:
        return self.metadata.type
