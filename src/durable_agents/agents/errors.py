"""Error taxonomy for agent task orchestration."""

from __future__ import annotations


class TaskValidationError(ValueError):
    """Required task input is missing or malformed."""


class TaskNotFoundError(LookupError):
    """Task id is unknown to the instance."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(RuntimeError):
    """Requested transition is not allowed from the current status."""


class UnknownAgentTypeError(ValueError):
    """Agent type is not part of the registry catalog."""

    def __init__(self, agent_type: str, valid_types: tuple[str, ...]) -> None:
        super().__init__(
            f"Invalid agent type: {agent_type}. Valid types: {', '.join(valid_types)}",
        )
        self.agent_type = agent_type


class ExecutionError(RuntimeError):
    """Raised by executors when a task attempt fails."""


class LogWriteError(RuntimeError):
    """Persisting an instance log entry failed."""
