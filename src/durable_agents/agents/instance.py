"""One addressable agent instance: its stores, lifecycle manager and alarm."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from durable_agents.agents.alarm import AlarmScheduler
from durable_agents.agents.executors.base import AgentDefinition
from durable_agents.agents.lifecycle import TaskLifecycleManager
from durable_agents.agents.log_store import LogStore
from durable_agents.agents.models import (
    AgentMetadata,
    AgentStateView,
    AlarmReport,
    LogLevel,
    Task,
    TaskStatus,
)
from durable_agents.agents.state_store import StateStore
from durable_agents.agents.task_store import TaskStore
from durable_agents.config import AlarmSettings, TaskSettings
from durable_agents.storage.alembic_runner import upgrade_head
from durable_agents.storage.common import build_sqlite_engine, utc_now

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

ORPHAN_REPORT_LIMIT = 100


class AgentInstance:
    """Single-writer owner of one agent's persisted tasks, state and log.

    Alarm batches run under ``lock`` so they never overlap. Immediate tasks
    started with ``submit`` run in the background and are tracked until they
    finish; ``wait_idle`` awaits them.
    """

    def __init__(  # noqa: PLR0913
        self,
        definition: AgentDefinition,
        *,
        instance_id: str,
        instance_key: str,
        db_path: Path,
        busy_timeout_ms: int = 5_000,
        task_settings: TaskSettings | None = None,
        alarm_settings: AlarmSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        task_settings = task_settings or TaskSettings()
        alarm_settings = alarm_settings or AlarmSettings()

        self.definition = definition
        self.id = instance_id
        self.instance_key = instance_key
        self.db_path = db_path
        self.alarms_enabled = alarm_settings.enabled
        self.lock = asyncio.Lock()
        self._clock = clock
        self._inflight: set[asyncio.Task[Any]] = set()
        self._app: FastAPI | None = None
        self._opened = False

        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.tasks = TaskStore(self.engine, clock=clock)
        self.logs = LogStore(self.engine, agent_type=definition.agent_type, clock=clock)
        self.state = StateStore(self.engine, clock=clock)
        self.alarms = AlarmScheduler(
            self.tasks,
            lock=self.lock,
            clock=clock,
            batch_size=alarm_settings.batch_size,
        )
        self.executor = definition.executor_factory(self)
        self.manager = TaskLifecycleManager(
            tasks=self.tasks,
            logs=self.logs,
            executor=self.executor,
            alarms=self.alarms,
            clock=clock,
            default_max_retries=task_settings.default_max_retries,
            backoff_base_ms=task_settings.backoff_base_ms,
            backoff_max_ms=task_settings.backoff_max_ms,
            retry_delay_ms=task_settings.retry_delay_ms,
        )

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    @property
    def agent_type(self) -> str:
        return self.definition.agent_type

    @property
    def metadata(self) -> AgentMetadata:
        return self.definition.metadata

    @property
    def app(self) -> FastAPI:
        """HTTP surface of this instance, built on first use."""

        if self._app is None:
            from durable_agents.agents.http_api import build_agent_app

            self._app = build_agent_app(self)
        return self._app

    def open(self) -> None:
        """Migrate the schema, re-arm the alarm and report tasks left running."""

        if self._opened:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)
        self._opened = True
        armed_at = self.alarms.resume()
        logger.info(
            "Agent instance ready type=%s key=%s id=%s alarm=%s",
            self.agent_type,
            self.instance_key,
            self.id,
            armed_at.isoformat() if armed_at else None,
        )
        self._report_orphaned_runs()

    def _report_orphaned_runs(self) -> None:
        # Rows a previous process left running are reported, never re-run.
        orphaned = self.tasks.list_recent(status=TaskStatus.RUNNING, limit=ORPHAN_REPORT_LIMIT)
        if not orphaned:
            return
        task_ids = [task.id for task in orphaned]
        logger.warning(
            "Tasks left running type=%s id=%s count=%s",
            self.agent_type,
            self.id,
            len(task_ids),
        )
        error = self.logs.try_log(LogLevel.WARN, "Tasks left running on open", {"taskIds": task_ids})
        if error is not None:
            logger.warning("Instance log write failed: %s", error)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Drive the alarm with a real timer on ``loop``."""

        if self.alarms_enabled:
            self.alarms.bind(loop)

    async def close(self) -> None:
        self.alarms.unbind()
        await self.wait_idle()
        await self.alarms.wait_fired()
        self.engine.dispose()

    def get_state(self) -> AgentStateView:
        stats = self.tasks.stats()
        return AgentStateView(
            id=self.id,
            type=self.agent_type,
            status="busy" if stats.running > 0 else "idle",
            last_activity=stats.last_activity or self._clock(),
            tasks_completed=stats.completed,
            tasks_failed=stats.failed,
        )

    def submit(
        self,
        name: str,
        payload: Any = None,
        *,
        max_retries: int | None = None,
        schedule_for: datetime | None = None,
    ) -> Task:
        """Create a task; immediate ones start running without being awaited."""

        task = self.manager.create_task(
            name,
            payload,
            max_retries=max_retries,
            schedule_for=schedule_for,
        )
        if schedule_for is None:
            self.start_background(self.manager.run_task(task))
        return task

    def start_background(self, coroutine: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        background = asyncio.get_running_loop().create_task(coroutine)
        self._inflight.add(background)
        background.add_done_callback(self._on_background_done)
        return background

    async def wait_idle(self) -> None:
        """Wait until every background task run has finished."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def alarm(self) -> AlarmReport:
        return await self.alarms.alarm()

    def _on_background_done(self, background: asyncio.Task[Any]) -> None:
        self._inflight.discard(background)
        if background.cancelled():
            return
        error = background.exception()
        if error is not None:
            logger.error(
                "Background task run failed type=%s id=%s",
                self.agent_type,
                self.id,
                exc_info=error,
            )
