"""Echo executor: returns its payload, or fails on request."""

from __future__ import annotations

from durable_agents.agents.errors import ExecutionError
from durable_agents.agents.executors.base import TaskOutcome
from durable_agents.agents.models import Task


class EchoExecutor:
    """Completes every task with its own payload.

    A payload ``{"fail": true}`` raises ``ExecutionError`` so the retry path
    can be exercised end to end.
    """

    async def execute(self, task: Task) -> TaskOutcome:
        payload = task.payload
        if isinstance(payload, dict) and payload.get("fail"):
            message = payload.get("error") or f"Echo task {task.name} asked to fail"
            raise ExecutionError(str(message))
        return TaskOutcome(success=True, data={"name": task.name, "echo": payload})
