"""Append-only, size-bounded event log of one agent instance."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from durable_agents.agents.errors import LogWriteError
from durable_agents.agents.models import LogEntry, LogLevel
from durable_agents.storage.common import to_db_datetime, to_utc_aware, utc_now
from durable_agents.storage.sqlmodel_models import LogRow

_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class LogStore:
    """Observability log persisted next to the task table.

    The ``logs_cleanup`` trigger created by the schema migration trims the
    oldest 100 rows whenever an insert pushes the table above 1000 rows.
    Every entry is mirrored to the Python logger of the agent type.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        agent_type: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.engine = engine
        self._clock = clock
        self._prefix = f"[{agent_type}]"
        self._logger = logging.getLogger(f"durable_agents.agents.{agent_type}")

    def log(self, level: LogLevel | str, message: str, context: Any = None) -> None:
        """Persist one entry; raises ``LogWriteError`` when the insert fails."""

        level = LogLevel(level)
        context_json = json.dumps(context, ensure_ascii=False, default=str) if context else None
        self._logger.log(
            _PY_LEVELS[level],
            "%s %s%s",
            self._prefix,
            message,
            f" {context_json}" if context_json else "",
        )
        try:
            with Session(self.engine) as session:
                session.add(
                    LogRow(
                        level=level.value,
                        message=message,
                        context=context_json,
                        created_at=to_db_datetime(self._clock()),
                    ),
                )
                session.commit()
        except SQLAlchemyError as error:
            raise LogWriteError(f"Failed to persist log entry: {error}") from error

    def try_log(
        self,
        level: LogLevel | str,
        message: str,
        context: Any = None,
    ) -> LogWriteError | None:
        """Like ``log`` but hands the failure back to the caller instead of raising."""

        try:
            self.log(level, message, context)
        except LogWriteError as error:
            return error
        return None

    def list_recent(
        self,
        *,
        level: LogLevel | str | None = None,
        limit: int = 100,
    ) -> list[LogEntry]:
        """Newest entries first."""

        statement = select(LogRow)
        if level is not None:
            statement = statement.where(LogRow.level == LogLevel(level).value)
        statement = statement.order_by(col(LogRow.id).desc()).limit(max(0, limit))
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            LogEntry(
                id=row.id or 0,
                level=row.level,
                message=row.message,
                context=json.loads(row.context) if row.context else None,
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    def count(self) -> int:
        with Session(self.engine) as session:
            return int(session.exec(select(func.count()).select_from(LogRow)).one())
