"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from durable_agents.agents.errors import ExecutionError
from durable_agents.agents.executors.base import AgentDefinition, TaskOutcome
from durable_agents.agents.instance import AgentInstance
from durable_agents.agents.models import AgentMetadata, Task
from durable_agents.config import AlarmSettings, TaskSettings

START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, seconds: float = 0, ms: int = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, milliseconds=ms)
        return self.now


class ScriptedExecutor:
    """Plays back outcomes or exceptions in order, then succeeds.

    With ``fail_always`` every attempt raises ``ExecutionError``.
    """

    def __init__(self, *steps: TaskOutcome | Exception, fail_always: bool = False) -> None:
        self._steps = list(steps)
        self.fail_always = fail_always
        self.calls: list[str] = []

    async def execute(self, task: Task) -> TaskOutcome:
        self.calls.append(task.id)
        if self.fail_always:
            raise ExecutionError("boom")
        if not self._steps:
            return TaskOutcome(success=True, data={"ok": task.name})
        step = self._steps.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def _definition(
    executor: object,
    *,
    agent_type: str = "test",
) -> AgentDefinition:
    return AgentDefinition(
        metadata=AgentMetadata(
            type=agent_type,
            version="1.0.0",
            description="Agent used by tests",
            tools=("run",),
        ),
        executor_factory=lambda instance: executor,  # type: ignore[arg-type,return-value]
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_instance(tmp_path: Path, clock: FakeClock) -> Iterator[Callable[..., AgentInstance]]:
    """Factory for opened instances backed by SQLite files under ``tmp_path``."""

    created: list[AgentInstance] = []

    def _make(  # noqa: PLR0913
        *steps: TaskOutcome | Exception,
        fail_always: bool = False,
        executor: object | None = None,
        definition: AgentDefinition | None = None,
        db_path: Path | None = None,
        batch_size: int = 10,
        task_settings: TaskSettings | None = None,
        instance_clock: Callable[[], datetime] | None = None,
    ) -> AgentInstance:
        if definition is None:
            definition = _definition(
                executor or ScriptedExecutor(*steps, fail_always=fail_always),
            )
        instance = AgentInstance(
            definition,
            instance_id=f"{definition.agent_type}-{len(created)}",
            instance_key="default",
            db_path=db_path or tmp_path / definition.agent_type / f"{len(created)}.db",
            task_settings=task_settings,
            alarm_settings=AlarmSettings(batch_size=batch_size),
            clock=instance_clock or clock,
        )
        instance.open()
        created.append(instance)
        return instance

    yield _make

    for instance in created:
        instance.alarms.unbind()
        instance.engine.dispose()
