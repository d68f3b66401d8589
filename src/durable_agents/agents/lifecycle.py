"""Task lifecycle: creation, execution, retry with capped backoff."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from durable_agents.agents.alarm import AlarmScheduler
from durable_agents.agents.errors import TaskNotFoundError, TaskStateError, TaskValidationError
from durable_agents.agents.executors.base import TaskExecutor, TaskOutcome
from durable_agents.agents.log_store import LogStore
from durable_agents.agents.models import (
    LogLevel,
    RunDisposition,
    Task,
    TaskCreate,
    TaskStatus,
)
from durable_agents.agents.task_store import TaskStore
from durable_agents.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_MS = 1_000
BACKOFF_MAX_MS = 300_000
DEFAULT_RETRY_DELAY_MS = 60_000


def backoff_delay_ms(
    retry_count: int,
    *,
    base_ms: int = BACKOFF_BASE_MS,
    max_ms: int = BACKOFF_MAX_MS,
) -> int:
    """Capped exponential backoff: ``min(2**retry_count * base_ms, max_ms)``."""

    return min(2 ** max(retry_count, 0) * base_ms, max_ms)


@dataclass(slots=True)
class TaskRun:
    """Outcome of one ``run_task`` call."""

    task_id: str
    disposition: RunDisposition
    outcome: TaskOutcome


class TaskLifecycleManager:
    """Sole writer of task rows for one agent instance.

    State machine: ``pending -> running -> completed | failed``, with failed
    attempts looping back to ``pending`` until ``max_retries`` is reached.
    ``cancelled`` is only reachable through ``cancel_task``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        tasks: TaskStore,
        logs: LogStore,
        executor: TaskExecutor,
        alarms: AlarmScheduler,
        clock: Callable[[], datetime] = utc_now,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base_ms: int = BACKOFF_BASE_MS,
        backoff_max_ms: int = BACKOFF_MAX_MS,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
    ) -> None:
        self.tasks = tasks
        self.logs = logs
        self.executor = executor
        self.alarms = alarms
        self.default_max_retries = default_max_retries
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.retry_delay_ms = retry_delay_ms
        self._clock = clock
        alarms.attach(self.run_task)

    def backoff_delay_ms(self, retry_count: int) -> int:
        return backoff_delay_ms(
            retry_count,
            base_ms=self.backoff_base_ms,
            max_ms=self.backoff_max_ms,
        )

    def create_task(
        self,
        name: str,
        payload: Any = None,
        *,
        max_retries: int | None = None,
        schedule_for: datetime | None = None,
    ) -> Task:
        """Insert a pending task; scheduled tasks arm the alarm.

        Immediate tasks are left for the caller to start.
        """

        if not isinstance(name, str) or not name.strip():
            raise TaskValidationError("Task name required")
        if max_retries is None:
            max_retries = self.default_max_retries
        if max_retries < 0:
            raise TaskValidationError("maxRetries must be >= 0")

        task = self.tasks.create(
            TaskCreate(
                name=name,
                payload=payload,
                max_retries=max_retries,
                scheduled_for=schedule_for,
            ),
        )
        self._log(LogLevel.INFO, f"Task created: {name}", {"taskId": task.id})
        if schedule_for is not None:
            self.alarms.arm(schedule_for)
        return task

    async def run_task(self, task: Task) -> TaskRun:
        """Execute one attempt and record success or route the failure to retry."""

        started = time.monotonic()
        claimed = self.tasks.claim(task.id, now=self._clock())
        if claimed is None:
            logger.debug("Task %s is not pending anymore; skipping", task.id)
            return TaskRun(
                task_id=task.id,
                disposition=RunDisposition.SKIPPED,
                outcome=TaskOutcome(success=False, error="Task is not pending"),
            )

        self._log(LogLevel.INFO, f"Starting task: {claimed.name}", {"taskId": claimed.id})
        try:
            outcome = await self.executor.execute(claimed)
        except Exception as error:  # noqa: BLE001 - hook failures feed the retry policy
            outcome = TaskOutcome(success=False, error=str(error) or type(error).__name__)
        duration_ms = int((time.monotonic() - started) * 1000)
        outcome.duration_ms = outcome.duration_ms or duration_ms

        if outcome.success:
            self.tasks.update(
                claimed.id,
                status=TaskStatus.COMPLETED,
                result=outcome.data,
                completed_at=self._clock(),
            )
            self._log(
                LogLevel.INFO,
                f"Task completed: {claimed.name}",
                {"taskId": claimed.id, "duration": outcome.duration_ms},
            )
            return TaskRun(claimed.id, RunDisposition.COMPLETED, outcome)

        error_message = outcome.error or "Task failed"
        self._log(
            LogLevel.ERROR,
            f"Task failed: {claimed.name}",
            {"taskId": claimed.id, "error": error_message},
        )
        retried = self.retry_task(claimed.id, self.backoff_delay_ms(claimed.retry_count))
        if not retried:
            self._log(
                LogLevel.ERROR,
                f"Task exhausted retries: {claimed.name}",
                {"taskId": claimed.id, "lastError": error_message},
            )
            return TaskRun(claimed.id, RunDisposition.FAILED, outcome)
        return TaskRun(claimed.id, RunDisposition.RETRIED, outcome)

    def retry_task(self, task_id: str, delay_ms: int | None = None) -> bool:
        """Requeue a task after ``delay_ms``; fail it once retries are used up.

        Returns ``True`` when the task was requeued.
        """

        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status in {TaskStatus.COMPLETED, TaskStatus.CANCELLED}:
            raise TaskStateError(f"Task cannot be retried from status={task.status.value}")

        now = self._clock()
        if task.retry_count >= task.max_retries:
            self.tasks.update(
                task_id,
                status=TaskStatus.FAILED,
                error=f"Max retries ({task.max_retries}) exceeded",
                completed_at=now,
            )
            self._log(
                LogLevel.WARN,
                "Task retries exhausted",
                {"taskId": task_id, "maxRetries": task.max_retries},
            )
            return False

        delay_ms = self.retry_delay_ms if delay_ms is None else max(0, delay_ms)
        scheduled_for = now + timedelta(milliseconds=delay_ms)
        self.tasks.update(
            task_id,
            status=TaskStatus.PENDING,
            retry_count=task.retry_count + 1,
            scheduled_for=scheduled_for,
            completed_at=None,
        )
        self.alarms.arm(scheduled_for)
        self._log(
            LogLevel.INFO,
            "Task scheduled for retry",
            {
                "taskId": task_id,
                "retryCount": task.retry_count + 1,
                "scheduledFor": to_iso(scheduled_for),
            },
        )
        return True

    def schedule_retry_with_backoff(self, task_id: str, attempt: int) -> bool:
        return self.retry_task(task_id, self.backoff_delay_ms(attempt))

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a pending task. Running attempts are never interrupted."""

        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.PENDING:
            raise TaskStateError(f"Task cannot be cancelled from status={task.status.value}")

        cancelled = self.tasks.update(
            task_id,
            status=TaskStatus.CANCELLED,
            completed_at=self._clock(),
        )
        if cancelled is None:
            raise TaskNotFoundError(task_id)
        self._log(LogLevel.INFO, f"Task cancelled: {task.name}", {"taskId": task_id})
        return cancelled

    def _log(self, level: LogLevel, message: str, context: Any = None) -> None:
        error = self.logs.try_log(level, message, context)
        if error is not None:
            logger.warning("Instance log write failed (%s): %s", message, error)
