"""Persistent task table of one agent instance."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import func, literal_column, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from durable_agents.agents.models import Task, TaskCreate, TaskStats, TaskStatus
from durable_agents.storage.common import to_db_datetime, to_utc_aware, utc_now
from durable_agents.storage.sqlmodel_models import TaskRow

_ROWID = literal_column("tasks.rowid")

_PATCHABLE_FIELDS = frozenset(
    {
        "status",
        "result",
        "error",
        "retry_count",
        "max_retries",
        "started_at",
        "completed_at",
        "scheduled_for",
    },
)


class TaskStore:
    """CRUD and filtered queries over the ``tasks`` table.

    Every call opens its own session, so each statement is atomic on its own.
    Rows are never deleted.
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, payload: TaskCreate) -> Task:
        """Insert a new ``pending`` task."""

        now = self._clock()
        row = TaskRow(
            id=payload.task_id or str(uuid4()),
            name=payload.name,
            payload=_dump_json(payload.payload if payload.payload is not None else {}),
            status=TaskStatus.PENDING.value,
            retry_count=0,
            max_retries=payload.max_retries,
            created_at=to_db_datetime(now),
            scheduled_for=(
                to_db_datetime(payload.scheduled_for)
                if payload.scheduled_for is not None
                else None
            ),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def get(self, task_id: str) -> Task | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task(row) if row is not None else None

    def list_pending(self, name: str | None = None) -> list[Task]:
        """Pending tasks, oldest first, optionally filtered by task name."""

        statement = select(TaskRow).where(TaskRow.status == TaskStatus.PENDING.value)
        if name is not None:
            statement = statement.where(TaskRow.name == name)
        statement = statement.order_by(col(TaskRow.created_at).asc(), _ROWID.asc())
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def list_recent(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[Task]:
        """Most recently created tasks first."""

        statement = select(TaskRow)
        if status is not None:
            statement = statement.where(TaskRow.status == status.value)
        statement = statement.order_by(col(TaskRow.created_at).desc(), _ROWID.desc()).limit(
            max(0, limit),
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def list_due(self, *, now: datetime, limit: int) -> list[Task]:
        """Pending tasks whose ``scheduled_for`` is unset or not in the future."""

        statement = (
            select(TaskRow)
            .where(*_due_conditions(now))
            .order_by(col(TaskRow.created_at).asc(), _ROWID.asc())
            .limit(max(0, limit))
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_task(row) for row in rows]

    def count_due(self, *, now: datetime) -> int:
        statement = select(func.count()).select_from(TaskRow).where(*_due_conditions(now))
        with Session(self.engine) as session:
            return int(session.exec(statement).one())

    def next_scheduled_at(self, *, now: datetime) -> datetime | None:
        """Earliest future ``scheduled_for`` among pending tasks."""

        with Session(self.engine) as session:
            value = session.exec(
                select(func.min(TaskRow.scheduled_for)).where(
                    TaskRow.status == TaskStatus.PENDING.value,
                    col(TaskRow.scheduled_for) > to_db_datetime(now),
                ),
            ).one()
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        return to_utc_aware(value)

    def claim(self, task_id: str, *, now: datetime) -> Task | None:
        """Atomically move a pending task to ``running``.

        Returns ``None`` when the row is missing or no longer pending.
        """

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == task_id,
                    col(TaskRow.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(TaskRow, task_id)
            return _to_task(row) if row is not None else None

    def update(self, task_id: str, **fields: Any) -> Task | None:
        """Patch the supplied columns only; an explicit ``None`` clears a column."""

        unknown = set(fields) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get(task_id)

        values = {name: _to_column_value(name, value) for name, value in fields.items()}
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow).where(col(TaskRow.id) == task_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            row = session.get(TaskRow, task_id)
            return _to_task(row) if row is not None else None

    def stats(self) -> TaskStats:
        """Completed/failed/running counters and the latest completion time."""

        stats = TaskStats()
        with Session(self.engine) as session:
            counts = session.exec(
                select(TaskRow.status, func.count()).group_by(TaskRow.status),
            ).all()
            last_activity = session.exec(select(func.max(TaskRow.completed_at))).one()
        for status, count in counts:
            if status == TaskStatus.COMPLETED.value:
                stats.completed = int(count)
            elif status == TaskStatus.FAILED.value:
                stats.failed = int(count)
            elif status == TaskStatus.RUNNING.value:
                stats.running = int(count)
        if last_activity is not None:
            if isinstance(last_activity, str):
                last_activity = datetime.fromisoformat(last_activity)
            stats.last_activity = to_utc_aware(last_activity)
        return stats


def _due_conditions(now: datetime) -> tuple[Any, ...]:
    return (
        col(TaskRow.status) == TaskStatus.PENDING.value,
        or_(
            col(TaskRow.scheduled_for).is_(None),
            col(TaskRow.scheduled_for) <= to_db_datetime(now),
        ),
    )


def _to_column_value(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "status":
        return TaskStatus(value).value
    if name == "result":
        return _dump_json(value)
    if isinstance(value, datetime):
        return to_db_datetime(value)
    return value


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(value: str | None) -> Any:
    if value is None or value == "":
        return None
    return json.loads(value)


def _to_task(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        name=row.name,
        payload=_load_json(row.payload) if row.payload else {},
        status=TaskStatus(row.status),
        result=_load_json(row.result),
        error=row.error,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        created_at=to_utc_aware(row.created_at),
        started_at=to_utc_aware(row.started_at) if row.started_at is not None else None,
        completed_at=to_utc_aware(row.completed_at) if row.completed_at is not None else None,
        scheduled_for=to_utc_aware(row.scheduled_for) if row.scheduled_for is not None else None,
    )
