from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import allure
import pytest

from durable_agents.agents.alarm import AlarmScheduler
from durable_agents.agents.executors.base import TaskOutcome
from durable_agents.agents.models import Task, TaskStatus
from durable_agents.storage.common import utc_now

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Alarm Scheduling"),
]


def test_arm_keeps_the_earliest_time_and_set_replaces_it(make_instance, clock) -> None:
    alarms = make_instance().alarms
    later = clock() + timedelta(minutes=30)
    sooner = clock() + timedelta(minutes=10)

    alarms.arm(later)
    alarms.arm(sooner)
    alarms.arm(later)
    assert alarms.armed_at == sooner

    alarms.set(later)
    assert alarms.armed_at == later
    alarms.cancel()
    assert alarms.armed_at is None


def test_batch_size_must_be_positive(make_instance) -> None:
    instance = make_instance()

    with pytest.raises(ValueError, match="batch size"):
        AlarmScheduler(instance.tasks, lock=asyncio.Lock(), batch_size=0)


@pytest.mark.asyncio
async def test_future_task_is_not_run_early_and_alarm_rearms(make_instance, clock) -> None:
    instance = make_instance()
    at = clock() + timedelta(minutes=1)
    task = instance.manager.create_task("later", schedule_for=at)

    report = await instance.alarm()

    assert report.processed == 0
    assert report.next_alarm_at == at
    assert instance.alarms.armed_at == at
    assert instance.tasks.get(task.id).status == TaskStatus.PENDING
    assert instance.executor.calls == []

    clock.advance(seconds=60)
    report = await instance.alarm()

    assert report.succeeded == 1
    assert instance.tasks.get(task.id).status == TaskStatus.COMPLETED
    assert instance.alarms.armed_at is None


@pytest.mark.asyncio
async def test_failing_due_tasks_are_rescheduled_in_one_firing(make_instance, clock) -> None:
    instance = make_instance(fail_always=True)
    first = instance.manager.create_task("a")
    second = instance.manager.create_task("b")

    report = await instance.alarm()

    assert report.processed == 2
    assert report.retried == 2
    for task_id in (first.id, second.id):
        stored = instance.tasks.get(task_id)
        assert stored.status == TaskStatus.PENDING
        assert stored.retry_count == 1
        assert stored.scheduled_for > clock()
    assert instance.alarms.armed_at == clock() + timedelta(seconds=1)


@pytest.mark.asyncio
async def test_backlog_beyond_batch_waits_for_next_firing(make_instance, clock) -> None:
    instance = make_instance()
    tasks = [instance.manager.create_task(f"task-{index}") for index in range(11)]

    first = await instance.alarm()

    assert first.processed == 10
    assert first.task_ids == [task.id for task in tasks[:10]]
    assert instance.tasks.get(tasks[10].id).status == TaskStatus.PENDING
    assert instance.alarms.armed_at == clock()

    second = await instance.alarm()

    assert second.task_ids == [tasks[10].id]
    assert instance.tasks.get(tasks[10].id).status == TaskStatus.COMPLETED
    assert instance.alarms.armed_at is None


@pytest.mark.asyncio
async def test_alarm_arms_minimum_future_schedule_after_processing(make_instance, clock) -> None:
    instance = make_instance()
    now = clock()
    instance.manager.create_task("due")
    instance.manager.create_task("far", schedule_for=now + timedelta(hours=2))
    instance.manager.create_task("near", schedule_for=now + timedelta(minutes=3))

    report = await instance.alarm()

    assert report.succeeded == 1
    assert instance.alarms.armed_at == now + timedelta(minutes=3)


@pytest.mark.asyncio
async def test_concurrent_firings_never_overlap(make_instance) -> None:
    class _TrackingExecutor:
        def __init__(self) -> None:
            self.active = 0
            self.peak = 0
            self.calls: list[str] = []

        async def execute(self, task: Task) -> TaskOutcome:
            self.calls.append(task.id)
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return TaskOutcome(success=True)

    executor = _TrackingExecutor()
    instance = make_instance(executor=executor)
    for index in range(3):
        instance.manager.create_task(f"task-{index}")

    reports = await asyncio.gather(instance.alarm(), instance.alarm())

    assert executor.peak == 1
    assert sorted(report.processed for report in reports) == [0, 3]
    assert len(executor.calls) == 3


def test_resume_rearms_from_persisted_tasks(make_instance, clock, tmp_path) -> None:
    db_path = tmp_path / "shared.db"
    at = clock() + timedelta(minutes=5)
    original = make_instance(db_path=db_path)
    original.manager.create_task("scheduled", schedule_for=at)

    reopened = make_instance(db_path=db_path)

    assert reopened.alarms.armed_at == at


def test_resume_arms_immediately_when_work_is_due(make_instance, clock, tmp_path) -> None:
    db_path = tmp_path / "shared.db"
    make_instance(db_path=db_path).manager.create_task("due now")

    reopened = make_instance(db_path=db_path)

    assert reopened.alarms.armed_at == clock()


def test_reopen_reports_tasks_left_running(make_instance, clock, tmp_path, caplog) -> None:
    db_path = tmp_path / "shared.db"
    crashed = make_instance(db_path=db_path)
    task = crashed.manager.create_task("interrupted")
    crashed.tasks.claim(task.id, now=clock())

    with caplog.at_level(logging.WARNING, logger="durable_agents.agents.instance"):
        reopened = make_instance(db_path=db_path)

    assert "Tasks left running" in caplog.text
    entry = reopened.logs.list_recent(level="warn", limit=1)[0]
    assert entry.message == "Tasks left running on open"
    assert entry.context == {"taskIds": [task.id]}
    assert reopened.tasks.get(task.id).status == TaskStatus.RUNNING


@pytest.mark.asyncio
async def test_bound_alarm_fires_on_its_own(make_instance) -> None:
    instance = make_instance(instance_clock=utc_now)
    instance.bind_loop(asyncio.get_running_loop())
    task = instance.manager.create_task(
        "timer",
        schedule_for=utc_now() + timedelta(milliseconds=50),
    )

    for _ in range(100):
        if instance.tasks.get(task.id).status == TaskStatus.COMPLETED:
            break
        await asyncio.sleep(0.02)
    await instance.alarms.wait_fired()

    assert instance.tasks.get(task.id).status == TaskStatus.COMPLETED
    instance.alarms.unbind()