"""Controllers for agent CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from durable_agents.agents.catalog import default_definitions
from durable_agents.agents.errors import TaskNotFoundError
from durable_agents.agents.instance import AgentInstance
from durable_agents.agents.models import LogLevel, Task, TaskStatus
from durable_agents.agents.registry import DEFAULT_INSTANCE_KEY, AgentRegistry
from durable_agents.config import Settings
from durable_agents.storage.common import to_iso, utc_now


@dataclass(slots=True)
class AgentsListCommand:
    """CLI input for listing agent types with their state."""

    data_dir: Path | None


@dataclass(slots=True)
class AlarmCommand:
    """CLI input for firing one alarm tick."""

    data_dir: Path | None
    agent_type: str
    instance_key: str = DEFAULT_INSTANCE_KEY


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    data_dir: Path | None
    agent_type: str
    name: str
    payload: str | None
    max_retries: int | None
    delay_seconds: int | None
    instance_key: str = DEFAULT_INSTANCE_KEY


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    data_dir: Path | None
    agent_type: str
    status: str | None
    limit: int
    instance_key: str = DEFAULT_INSTANCE_KEY


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for show/cancel operations on one task."""

    data_dir: Path | None
    agent_type: str
    task_id: str
    instance_key: str = DEFAULT_INSTANCE_KEY


@dataclass(slots=True)
class LogsCommand:
    """CLI input for instance log listing."""

    data_dir: Path | None
    agent_type: str
    level: str | None
    limit: int
    instance_key: str = DEFAULT_INSTANCE_KEY


class AgentsCliController:
    """Runs agent operations against the on-disk instances and renders lines."""

    def __init__(self, *, settings_factory: Callable[..., Settings] = Settings.from_env) -> None:
        self._settings_factory = settings_factory

    def list_agents(self, command: AgentsListCommand) -> list[str]:
        async def _run() -> list[dict[str, Any]]:
            async with self._registry(command.data_dir) as registry:
                return await registry.all_states()

        states = asyncio.run(_run())
        lines = [f"Agents: {len(states)}"]
        for item in states:
            state = item["state"]
            if "error" in state:
                lines.append(f"  {item['type']} error={state['error']}")
                continue
            lines.append(
                f"  {item['type']} status={state['status']} "
                f"completed={state['tasksCompleted']} failed={state['tasksFailed']} "
                f"last_activity={state['lastActivity']}",
            )
        return lines

    def fire_alarm(self, command: AlarmCommand) -> list[str]:
        async def _run() -> list[str]:
            async with self._registry(command.data_dir) as registry:
                instance = registry.resolve(command.agent_type, command.instance_key)
                report = await instance.alarm()
            return [
                "Alarm summary: "
                f"processed={report.processed} succeeded={report.succeeded} "
                f"retried={report.retried} failed={report.failed} skipped={report.skipped}",
                f"Next alarm: {to_iso(report.next_alarm_at) or '-'}",
            ]

        return asyncio.run(_run())

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        payload = _parse_payload(command.payload)

        async def _run() -> Task:
            async with self._registry(command.data_dir) as registry:
                instance = registry.resolve(command.agent_type, command.instance_key)
                schedule_for = None
                if command.delay_seconds is not None:
                    schedule_for = instance.clock() + timedelta(seconds=command.delay_seconds)
                task = instance.submit(
                    command.name,
                    payload,
                    max_retries=command.max_retries,
                    schedule_for=schedule_for,
                )
                await instance.wait_idle()
                return _require_task(instance, task.id)

        task = asyncio.run(_run())
        lines = [f"Task created: task_id={task.id} name={task.name} status={task.status.value}"]
        if task.scheduled_for is not None:
            lines.append(f"Scheduled for: {to_iso(task.scheduled_for)}")
        if task.error:
            lines.append(f"Error: {task.error}")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = TaskStatus(command.status.strip().lower()) if command.status else None

        async def _run() -> list[Task]:
            async with self._registry(command.data_dir) as registry:
                instance = registry.resolve(command.agent_type, command.instance_key)
                return instance.tasks.list_recent(status=status, limit=command.limit)

        tasks = asyncio.run(_run())
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} name={task.name} status={task.status.value} "
                f"retries={task.retry_count}/{task.max_retries} "
                f"scheduled_for={to_iso(task.scheduled_for) or '-'}",
            )
        return lines

    def show_task(self, command: TaskInspectCommand) -> list[str]:
        async def _run() -> Task | None:
            async with self._registry(command.data_dir) as registry:
                instance = registry.resolve(command.agent_type, command.instance_key)
                return instance.tasks.get(command.task_id)

        task = asyncio.run(_run())
        if task is None:
            return [f"Task not found: {command.task_id}"]
        return [
            f"Task: {task.id}",
            f"Name: {task.name}",
            f"Status: {task.status.value}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Payload: {json.dumps(task.payload, ensure_ascii=False)}",
            f"Result: {json.dumps(task.result, ensure_ascii=False)}",
            f"Error: {task.error or '-'}",
            f"Created: {to_iso(task.created_at)}",
            f"Started: {to_iso(task.started_at) or '-'}",
            f"Completed: {to_iso(task.completed_at) or '-'}",
            f"Scheduled for: {to_iso(task.scheduled_for) or '-'}",
        ]

    def cancel_task(self, command: TaskInspectCommand) -> list[str]:
        async def _run() -> Task:
            async with self._registry(command.data_dir) as registry:
                instance = registry.resolve(command.agent_type, command.instance_key)
                return instance.manager.cancel_task(command.task_id)

        task = asyncio.run(_run())
        return [f"Task cancelled: {task.id}"]

    def logs(self, command: LogsCommand) -> list[str]:
        level = LogLevel(command.level.strip().lower()) if command.level else None

        async def _run() -> list[Any]:
            async with self._registry(command.data_dir) as registry:
                instance = registry.resolve(command.agent_type, command.instance_key)
                return instance.logs.list_recent(level=level, limit=command.limit)

        entries = asyncio.run(_run())
        lines = [f"Logs: {len(entries)}"]
        for entry in entries:
            context = f" {json.dumps(entry.context, ensure_ascii=False)}" if entry.context else ""
            lines.append(
                f"  {to_iso(entry.created_at)} {entry.level.upper()} {entry.message}{context}",
            )
        return lines

    @asynccontextmanager
    async def _registry(self, data_dir: Path | None) -> AsyncIterator[AgentRegistry]:
        settings = self._settings_factory(data_dir=data_dir)
        settings.validate()
        # One-shot commands never fire alarms on their own; `agents alarm` does.
        settings.alarm.enabled = False
        registry = AgentRegistry(default_definitions(settings), settings=settings, clock=utc_now)
        try:
            yield registry
        finally:
            await registry.close()


def _parse_payload(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Payload must be valid JSON: {error.msg}") from error


def _require_task(instance: AgentInstance, task_id: str) -> Task:
    task = instance.tasks.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task
