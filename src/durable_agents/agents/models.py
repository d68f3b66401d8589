"""Domain models for per-instance agent tasks, logs and state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from durable_agents.storage.common import to_iso


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class RunDisposition(str, Enum):
    """How one `run_task` call ended."""

    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    SKIPPED = "skipped"


class LogLevel(str, Enum):
    """Severity levels accepted by the instance log."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for inserting a task."""

    name: str
    payload: Any = None
    max_retries: int = 3
    scheduled_for: datetime | None = None
    task_id: str | None = None


@dataclass(slots=True)
class Task:
    """Readable task view shared by the manager, HTTP layer and CLI."""

    id: str
    name: str
    payload: Any
    status: TaskStatus
    result: Any
    error: str | None
    retry_count: int
    max_retries: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    scheduled_for: datetime | None

    def to_json(self) -> dict[str, Any]:
        """Wire representation used by the HTTP surface."""

        return {
            "id": self.id,
            "name": self.name,
            "payload": self.payload,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "createdAt": to_iso(self.created_at),
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "scheduledFor": to_iso(self.scheduled_for),
        }


@dataclass(slots=True)
class LogEntry:
    """One persisted observability record."""

    id: int
    level: str
    message: str
    context: Any
    created_at: datetime

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "level": self.level,
            "message": self.message,
            "context": self.context,
            "created_at": to_iso(self.created_at),
        }


@dataclass(slots=True)
class TaskStats:
    """Aggregate counters over the task table."""

    completed: int = 0
    failed: int = 0
    running: int = 0
    last_activity: datetime | None = None


@dataclass(slots=True)
class AgentMetadata:
    """Static descriptor of an agent type."""

    type: str
    version: str
    description: str
    tools: tuple[str, ...] = ()

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "version": self.version,
            "description": self.description,
            "tools": list(self.tools),
        }


@dataclass(slots=True)
class AgentStateView:
    """Derived runtime state of one agent instance."""

    id: str
    type: str
    status: str
    last_activity: datetime
    tasks_completed: int
    tasks_failed: int

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "lastActivity": to_iso(self.last_activity),
            "tasksCompleted": self.tasks_completed,
            "tasksFailed": self.tasks_failed,
        }


@dataclass(slots=True)
class FanOutResult:
    """One agent type's slot in a fan-out result collection."""

    type: str
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class AlarmReport:
    """What a single alarm firing did."""

    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    next_alarm_at: datetime | None = None
    task_ids: list[str] = field(default_factory=list)
