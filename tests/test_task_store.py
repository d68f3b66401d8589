from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from durable_agents.agents.models import TaskCreate, TaskStatus

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Task Store"),
]


def test_create_persists_pending_task_with_json_payload(make_instance, clock) -> None:
    instance = make_instance()

    task = instance.tasks.create(
        TaskCreate(name="sync", payload={"repo": "a/b", "items": [1, 2]}, max_retries=5),
    )
    loaded = instance.tasks.get(task.id)

    assert loaded is not None
    assert loaded.name == "sync"
    assert loaded.payload == {"repo": "a/b", "items": [1, 2]}
    assert loaded.status == TaskStatus.PENDING
    assert loaded.retry_count == 0
    assert loaded.max_retries == 5
    assert loaded.created_at == clock()
    assert loaded.started_at is None
    assert loaded.completed_at is None
    assert loaded.scheduled_for is None


def test_get_unknown_task_returns_none(make_instance) -> None:
    assert make_instance().tasks.get("missing") is None


def test_list_due_skips_future_and_non_pending_tasks(make_instance, clock) -> None:
    instance = make_instance()
    store = instance.tasks
    now = clock()

    immediate = store.create(TaskCreate(name="immediate"))
    past = store.create(TaskCreate(name="past", scheduled_for=now - timedelta(seconds=1)))
    store.create(TaskCreate(name="future", scheduled_for=now + timedelta(minutes=1)))
    done = store.create(TaskCreate(name="done"))
    store.update(done.id, status=TaskStatus.COMPLETED, completed_at=now)

    due = store.list_due(now=now, limit=10)

    assert [task.id for task in due] == [immediate.id, past.id]
    assert store.count_due(now=now) == 2


def test_list_due_orders_oldest_first_and_respects_limit(make_instance, clock) -> None:
    store = make_instance().tasks
    created = []
    for index in range(4):
        created.append(store.create(TaskCreate(name=f"task-{index}")))
        clock.advance(seconds=1)

    due = store.list_due(now=clock(), limit=3)

    assert [task.id for task in due] == [task.id for task in created[:3]]


def test_next_scheduled_at_returns_earliest_future_pending_time(make_instance, clock) -> None:
    store = make_instance().tasks
    now = clock()
    store.create(TaskCreate(name="late", scheduled_for=now + timedelta(minutes=10)))
    store.create(TaskCreate(name="soon", scheduled_for=now + timedelta(minutes=2)))
    store.create(TaskCreate(name="due", scheduled_for=now - timedelta(minutes=1)))

    assert store.next_scheduled_at(now=now) == now + timedelta(minutes=2)
    assert store.next_scheduled_at(now=now + timedelta(hours=1)) is None


def test_claim_moves_pending_to_running_only_once(make_instance, clock) -> None:
    store = make_instance().tasks
    task = store.create(TaskCreate(name="once"))

    claimed = store.claim(task.id, now=clock())
    second = store.claim(task.id, now=clock())

    assert claimed is not None
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.started_at == clock()
    assert second is None
    assert store.claim("missing", now=clock()) is None


def test_update_patches_only_supplied_fields(make_instance, clock) -> None:
    store = make_instance().tasks
    scheduled = clock() + timedelta(seconds=30)
    task = store.create(TaskCreate(name="patch", payload={"a": 1}, scheduled_for=scheduled))

    updated = store.update(task.id, result={"value": 42}, error="warn")

    assert updated is not None
    assert updated.result == {"value": 42}
    assert updated.error == "warn"
    assert updated.payload == {"a": 1}
    assert updated.scheduled_for == scheduled

    cleared = store.update(task.id, scheduled_for=None, error=None)
    assert cleared is not None
    assert cleared.scheduled_for is None
    assert cleared.error is None
    assert cleared.result == {"value": 42}


def test_update_rejects_unknown_fields_and_missing_rows(make_instance) -> None:
    store = make_instance().tasks
    task = store.create(TaskCreate(name="patch"))

    with pytest.raises(ValueError, match="Unsupported task fields: bogus"):
        store.update(task.id, bogus=1)
    assert store.update("missing", error="x") is None


def test_list_recent_filters_by_status_newest_first(make_instance, clock) -> None:
    store = make_instance().tasks
    first = store.create(TaskCreate(name="first"))
    clock.advance(seconds=1)
    second = store.create(TaskCreate(name="second"))
    clock.advance(seconds=1)
    third = store.create(TaskCreate(name="third"))
    store.update(second.id, status=TaskStatus.FAILED, completed_at=clock())

    assert [task.id for task in store.list_recent()] == [third.id, second.id, first.id]
    assert [task.id for task in store.list_recent(status=TaskStatus.PENDING)] == [
        third.id,
        first.id,
    ]
    assert len(store.list_recent(limit=1)) == 1


def test_list_pending_filters_by_name(make_instance) -> None:
    store = make_instance().tasks
    store.create(TaskCreate(name="alpha"))
    beta = store.create(TaskCreate(name="beta"))

    assert [task.id for task in store.list_pending(name="beta")] == [beta.id]
    assert len(store.list_pending()) == 2


def test_stats_counts_terminal_and_running_tasks(make_instance, clock) -> None:
    store = make_instance().tasks
    completed = store.create(TaskCreate(name="ok"))
    failed = store.create(TaskCreate(name="bad"))
    running = store.create(TaskCreate(name="busy"))
    store.update(completed.id, status=TaskStatus.COMPLETED, completed_at=clock())
    finished_at = clock.advance(seconds=5)
    store.update(failed.id, status=TaskStatus.FAILED, completed_at=finished_at)
    store.claim(running.id, now=clock())

    stats = store.stats()

    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.running == 1
    assert stats.last_activity == finished_at
